"""
Balance Calculator

Derives a loan's outstanding principal, unpaid interest and unpaid fees by
folding its ledger in (effective date, sequence) order. Interest accrues
sub-period by sub-period on the principal outstanding between ledger
events, at the rate recorded on the most recent draw. Nothing here is
persisted; the same inputs always give the same Balance.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from .daycount import accrued_interest, reporting_today
from .models import Balance, LedgerTransaction, Loan, LoanStatus, TransactionType
from .money import ZERO, MONEY_PLACES, round_money


def balance_as_of_date(loan: Loan, as_of: Optional[date] = None) -> date:
    """
    The date a balance is computed for.
    
    Settled loans are frozen at their settlement date and cancelled loans at
    their cancellation date, whatever the caller asks for.
    """
    if loan.status == LoanStatus.SETTLED and loan.settled_date:
        return loan.settled_date
    if loan.status == LoanStatus.CANCELLED and loan.cancelled_date:
        return loan.cancelled_date
    return as_of or reporting_today()


def calculate_balance(
    loan: Loan,
    ledger: Iterable[LedgerTransaction],
    as_of: Optional[date] = None,
    places: int = MONEY_PLACES
) -> Balance:
    """
    Fold a ledger into a Balance.
    
    Args:
        loan: Loan the ledger belongs to
        ledger: The loan's transactions (any order)
        as_of: Valuation date; ignored for settled/cancelled loans
        places: Decimal places for reported amounts
    """
    as_of = balance_as_of_date(loan, as_of)
    entries = sorted(
        (t for t in ledger if t.effective_date <= as_of),
        key=lambda t: (t.effective_date, t.sequence)
    )
    
    principal = ZERO
    drawn = ZERO
    principal_paid = ZERO
    interest_accrued = ZERO
    interest_paid = ZERO
    fees_charged = ZERO
    fees_paid = ZERO
    rate = loan.annual_rate
    cursor: Optional[date] = None
    
    for entry in entries:
        if cursor is None:
            cursor = entry.effective_date
        elif entry.effective_date > cursor:
            interest_accrued += accrued_interest(
                principal, rate, cursor, entry.effective_date, loan.interest_basis
            )
            cursor = entry.effective_date
        
        kind = entry.transaction_type
        if kind == TransactionType.DRAW:
            drawn += entry.amount
            principal += entry.amount
            if entry.annual_rate is not None:
                rate = entry.annual_rate
        elif kind in (TransactionType.REPAYMENT, TransactionType.SETTLEMENT):
            portion = entry.principal_portion or ZERO
            principal -= portion
            principal_paid += portion
            interest_paid += entry.interest_portion or ZERO
            fees_paid += entry.fee_portion or ZERO
        elif kind == TransactionType.INTEREST:
            interest_paid += entry.amount
        elif kind == TransactionType.FEE:
            fees_charged += entry.amount
    
    if cursor is not None and as_of > cursor:
        interest_accrued += accrued_interest(principal, rate, cursor, as_of, loan.interest_basis)
    
    interest_accrued = round_money(interest_accrued, places)
    principal_outstanding = max(ZERO, round_money(principal, places))
    interest_outstanding = max(ZERO, interest_accrued - interest_paid)
    fees_outstanding = max(ZERO, fees_charged - fees_paid)
    
    return Balance(
        principal=principal_outstanding,
        interest=interest_outstanding,
        fees=fees_outstanding,
        total=principal_outstanding + interest_outstanding + fees_outstanding,
        as_of_date=as_of,
        drawn_principal=drawn,
        principal_paid=principal_paid,
        interest_accrued=interest_accrued,
        interest_paid=interest_paid,
        fees_charged=fees_charged,
        fees_paid=fees_paid
    )


def projected_total_interest(loan: Loan, places: int = MONEY_PLACES) -> Decimal:
    """Interest on the original principal over the full term (start to due)"""
    return round_money(
        accrued_interest(loan.principal_amount, loan.annual_rate, loan.start_date,
                         loan.due_date, loan.interest_basis),
        places
    )
