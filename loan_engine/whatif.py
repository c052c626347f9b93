"""
What-If Simulator

Stateless scenarios that recompute a loan's interest cost under alternative
terms. They read a copy of the loan's parameters and never touch a ledger.
A positive ``savings`` means the scenario is cheaper than the current
trajectory; a negative one means it costs more.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from .daycount import InterestBasis, accrued_interest, reporting_today
from .exceptions import ValidationError
from .models import Loan
from .money import ZERO, HUNDRED, round_money, to_decimal


class ScenarioType(Enum):
    REFINANCE = "refinance"
    EARLY_PAYMENT = "early_payment"
    PARTIAL_PAYMENT = "partial_payment"
    TERM_CHANGE = "term_change"


@dataclass(frozen=True)
class LoanParameters:
    """Detached copy of the terms a scenario works from"""
    principal: Decimal
    annual_rate: Decimal
    start_date: date
    due_date: date
    basis: InterestBasis
    
    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanParameters':
        return cls(
            principal=loan.principal_amount,
            annual_rate=loan.annual_rate,
            start_date=loan.start_date,
            due_date=loan.due_date,
            basis=loan.interest_basis
        )
    
    @property
    def duration_days(self) -> int:
        return max(0, (self.due_date - self.start_date).days)
    
    def interest(self, principal: Optional[Decimal] = None, rate: Optional[Decimal] = None,
                 days: Optional[int] = None) -> Decimal:
        """Interest over ``days`` from the start date (full term by default)"""
        principal = self.principal if principal is None else principal
        rate = self.annual_rate if rate is None else rate
        days = self.duration_days if days is None else days
        return accrued_interest(principal, rate, self.start_date,
                                self.start_date + timedelta(days=days), self.basis)


@dataclass(frozen=True)
class RefinanceScenario:
    new_rate: Decimal


@dataclass(frozen=True)
class EarlyPaymentScenario:
    payment_amount: Decimal
    payment_date: Optional[date] = None


@dataclass(frozen=True)
class TermChangeScenario:
    new_duration_days: int


Scenario = Union[RefinanceScenario, EarlyPaymentScenario, TermChangeScenario]


@dataclass(frozen=True)
class ScenarioResult:
    scenario_type: ScenarioType
    name: str
    current_interest: Decimal
    current_total_cost: Decimal
    interest: Decimal
    total_cost: Decimal
    savings: Decimal
    savings_percent: Decimal
    details: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        def convert(value):
            if isinstance(value, Decimal):
                return str(value)
            if isinstance(value, date):
                return value.isoformat()
            return value
        
        return {
            'scenario_type': self.scenario_type.value,
            'name': self.name,
            'current_interest': str(self.current_interest),
            'current_total_cost': str(self.current_total_cost),
            'interest': str(self.interest),
            'total_cost': str(self.total_cost),
            'savings': str(self.savings),
            'savings_percent': str(self.savings_percent),
            'details': {k: convert(v) for k, v in self.details.items()}
        }


def _savings_percent(savings: Decimal, current_interest: Decimal) -> Decimal:
    if current_interest <= ZERO:
        return ZERO
    return round_money(savings / current_interest * HUNDRED)


def _result(params: LoanParameters, scenario_type: ScenarioType, name: str,
            interest: Decimal, **details) -> ScenarioResult:
    current_interest = round_money(params.interest())
    interest = round_money(interest)
    savings = current_interest - interest
    return ScenarioResult(
        scenario_type=scenario_type,
        name=name,
        current_interest=current_interest,
        current_total_cost=params.principal + current_interest,
        interest=interest,
        total_cost=params.principal + interest,
        savings=savings,
        savings_percent=_savings_percent(savings, current_interest),
        details=details
    )


def refinance(params: LoanParameters, scenario: RefinanceScenario) -> ScenarioResult:
    """Same principal and duration at a different rate"""
    new_rate = to_decimal(scenario.new_rate, "new_rate")
    if new_rate < ZERO or new_rate > HUNDRED:
        raise ValidationError("Interest rate must be between 0 and 100", {'new_rate': str(new_rate)})
    
    return _result(
        params, ScenarioType.REFINANCE, "Refinance at Different Rate",
        params.interest(rate=new_rate),
        new_rate=new_rate
    )


def early_payment(params: LoanParameters, scenario: EarlyPaymentScenario,
                  today: Optional[date] = None) -> ScenarioResult:
    """
    Pay some or all of the principal before the due date.
    
    Full payment stops interest at the payment date. Partial payment keeps
    interest to the payment date on the original principal, then charges
    the reduced principal for the rest of the term.
    """
    amount = to_decimal(scenario.payment_amount, "payment_amount")
    if amount <= ZERO:
        raise ValidationError("Payment amount must be positive", {'payment_amount': str(amount)})
    
    payment_date = scenario.payment_date or today or reporting_today()
    days_elapsed = (payment_date - params.start_date).days
    days_elapsed = max(0, min(days_elapsed, params.duration_days))
    interest_to_date = params.interest(days=days_elapsed)
    
    if amount >= params.principal:
        return _result(
            params, ScenarioType.EARLY_PAYMENT, "Full Early Payment",
            interest_to_date,
            payment_amount=amount,
            payment_date=payment_date,
            days_elapsed=days_elapsed
        )
    
    remaining_principal = params.principal - amount
    remaining_days = params.duration_days - days_elapsed
    future_interest = accrued_interest(
        remaining_principal, params.annual_rate,
        params.start_date + timedelta(days=days_elapsed), params.due_date, params.basis
    )
    return _result(
        params, ScenarioType.PARTIAL_PAYMENT, "Partial Early Payment",
        interest_to_date + future_interest,
        payment_amount=amount,
        payment_date=payment_date,
        days_elapsed=days_elapsed,
        remaining_days=remaining_days,
        remaining_principal=remaining_principal,
        interest_to_date=round_money(interest_to_date),
        future_interest=round_money(future_interest)
    )


def term_change(params: LoanParameters, scenario: TermChangeScenario) -> ScenarioResult:
    """Same start date and rate over a new duration; the due date moves with it"""
    new_days = scenario.new_duration_days
    if not isinstance(new_days, int) or isinstance(new_days, bool) or new_days <= 0:
        raise ValidationError("Duration must be a positive number of days", {'new_duration_days': new_days})
    
    name = "Extend Loan Term" if new_days > params.duration_days else "Reduce Loan Term"
    return _result(
        params, ScenarioType.TERM_CHANGE, name,
        params.interest(days=new_days),
        new_duration_days=new_days,
        new_due_date=params.start_date + timedelta(days=new_days),
        current_duration_days=params.duration_days
    )


def simulate(loan: Loan, scenario: Scenario, today: Optional[date] = None) -> ScenarioResult:
    """Run one scenario against a copy of the loan's terms"""
    params = LoanParameters.from_loan(loan)
    if isinstance(scenario, RefinanceScenario):
        return refinance(params, scenario)
    if isinstance(scenario, EarlyPaymentScenario):
        return early_payment(params, scenario, today)
    if isinstance(scenario, TermChangeScenario):
        return term_change(params, scenario)
    raise ValidationError(f"Unknown scenario: {type(scenario).__name__}")
