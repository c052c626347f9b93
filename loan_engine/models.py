"""
Domain Models

Loans, their ledger transactions and the facilities they are drawn on,
plus the derived Balance and RevolvingUsage views. Stored records extend
StorageRecord; derived views are never persisted.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .daycount import InterestBasis
from .exceptions import ValidationError
from .money import ZERO
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"         # Created on draw-down
    SETTLED = "settled"       # Fully repaid and closed; balance frozen
    CANCELLED = "cancelled"   # Voided; only state that allows deletion


class TransactionType(Enum):
    """Ledger transaction types"""
    DRAW = "draw"                 # Principal disbursed
    REPAYMENT = "repayment"       # Payment split across principal/interest/fees
    INTEREST = "interest"         # Interest paid on its own
    FEE = "fee"                   # Fee assessed against the loan
    SETTLEMENT = "settlement"     # Closing payment, revolve roll-off, or its reversal


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class Facility(StorageRecord):
    """Credit facility a loan is drawn on"""
    bank_name: str
    facility_type: str                        # revolving, term, bullet, ...
    credit_limit: Decimal
    cost_of_funding: Decimal                  # percent
    enable_revolving_tracking: bool = False
    max_revolving_period: Optional[int] = None  # days
    is_active: bool = True
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Facility':
        data = dict(data)
        data['created_at'] = _parse_datetime(data['created_at'])
        data['updated_at'] = _parse_datetime(data['updated_at'])
        data['credit_limit'] = _parse_decimal(data['credit_limit'])
        data['cost_of_funding'] = _parse_decimal(data['cost_of_funding'])
        return cls(**data)


@dataclass
class Loan(StorageRecord):
    """
    A single draw-down on a facility.
    
    Mutated only by the lifecycle operations of LoanEngine; every mutation
    bumps ``version`` so concurrent writers can be detected.
    """
    facility_id: str
    reference_number: str
    principal_amount: Decimal
    base_rate: Decimal                 # Index rate (e.g. SIBOR), percent
    margin: Decimal                    # Bank margin, percent
    interest_basis: InterestBasis
    start_date: date
    due_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    settled_date: Optional[date] = None
    settled_amount: Optional[Decimal] = None
    cancelled_date: Optional[date] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    version: int = 1
    
    def __post_init__(self):
        if self.principal_amount <= ZERO:
            raise ValidationError("Principal must be positive", {'principal_amount': str(self.principal_amount)})
        if self.due_date < self.start_date:
            raise ValidationError(
                "Due date cannot be before start date",
                {'start_date': self.start_date.isoformat(), 'due_date': self.due_date.isoformat()}
            )
        
        is_settled = self.status == LoanStatus.SETTLED
        has_settlement = self.settled_date is not None and self.settled_amount is not None
        if is_settled != has_settlement:
            raise ValidationError(
                "Settlement date and amount must be set exactly when the loan is settled",
                {'status': self.status.value}
            )
    
    @property
    def annual_rate(self) -> Decimal:
        """All-in annual rate in percent"""
        return self.base_rate + self.margin
    
    @property
    def term_days(self) -> int:
        return (self.due_date - self.start_date).days
    
    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['created_at'] = _parse_datetime(data['created_at'])
        data['updated_at'] = _parse_datetime(data['updated_at'])
        for name in ('principal_amount', 'base_rate', 'margin', 'settled_amount'):
            data[name] = _parse_decimal(data.get(name))
        for name in ('start_date', 'due_date', 'settled_date', 'cancelled_date'):
            data[name] = _parse_date(data.get(name))
        data['interest_basis'] = InterestBasis(data['interest_basis'])
        data['status'] = LoanStatus(data['status'])
        return cls(**data)


@dataclass
class LedgerTransaction(StorageRecord):
    """
    Immutable ledger record owned by one loan.
    
    ``sequence`` orders records of the same loan; portions are set on
    repayment and settlement records, ``annual_rate`` on draws.
    """
    loan_id: str
    transaction_type: TransactionType
    amount: Decimal
    effective_date: date
    sequence: int
    principal_portion: Optional[Decimal] = None
    interest_portion: Optional[Decimal] = None
    fee_portion: Optional[Decimal] = None
    annual_rate: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    reverses_transaction_id: Optional[str] = None
    memo: Optional[str] = None
    created_by: Optional[str] = None
    
    @property
    def is_reversal(self) -> bool:
        return self.reverses_transaction_id is not None
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerTransaction':
        data = dict(data)
        data['created_at'] = _parse_datetime(data['created_at'])
        data['updated_at'] = _parse_datetime(data['updated_at'])
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['effective_date'] = _parse_date(data['effective_date'])
        for name in ('amount', 'principal_portion', 'interest_portion', 'fee_portion', 'annual_rate'):
            data[name] = _parse_decimal(data.get(name))
        return cls(**data)


@dataclass(frozen=True)
class Balance:
    """Outstanding position of a loan as of a date (derived, never stored)"""
    principal: Decimal
    interest: Decimal
    fees: Decimal
    total: Decimal
    as_of_date: date
    drawn_principal: Decimal = ZERO
    principal_paid: Decimal = ZERO
    interest_accrued: Decimal = ZERO
    interest_paid: Decimal = ZERO
    fees_charged: Decimal = ZERO
    fees_paid: Decimal = ZERO
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'interest': str(self.interest),
            'fees': str(self.fees),
            'total': str(self.total),
            'as_of_date': self.as_of_date.isoformat(),
            'drawn_principal': str(self.drawn_principal),
            'principal_paid': str(self.principal_paid),
            'interest_accrued': str(self.interest_accrued),
            'interest_paid': str(self.interest_paid),
            'fees_charged': str(self.fees_charged),
            'fees_paid': str(self.fees_paid)
        }


class UsageStatus(Enum):
    """Revolving period usage bands"""
    AVAILABLE = "available"   # < warning threshold
    WARNING = "warning"       # warning..critical
    CRITICAL = "critical"     # critical..100
    EXPIRED = "expired"       # >= 100


@dataclass(frozen=True)
class RevolvingUsage:
    """Revolving period consumption for a facility or a single loan"""
    days_used: int
    days_remaining: int
    percentage_used: float
    status: UsageStatus
    can_revolve: bool
    max_revolving_period: Optional[int]
    facility_id: str
    loan_id: Optional[str] = None
    loan_status: Optional[LoanStatus] = None
    active_loans: Optional[int] = None
    total_loans: Optional[int] = None
    
    def to_dict(self) -> Dict[str, Any]:
        result = {
            'days_used': self.days_used,
            'days_remaining': self.days_remaining,
            'percentage_used': self.percentage_used,
            'status': self.status.value,
            'can_revolve': self.can_revolve,
            'max_revolving_period': self.max_revolving_period,
            'facility_id': self.facility_id
        }
        if self.loan_id is not None:
            result['loan_id'] = self.loan_id
            result['loan_status'] = self.loan_status.value if self.loan_status else None
        else:
            result['active_loans'] = self.active_loans
            result['total_loans'] = self.total_loans
        return result
