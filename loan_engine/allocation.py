"""
Payment Allocator

Splits an incoming payment across fees, interest and principal. Callers may
pass an explicit split; otherwise the configured policy decides the order.
Payments larger than what is outstanding are rejected, never absorbed.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .exceptions import OverpaymentError, ValidationError
from .models import Balance
from .money import ZERO


class AllocationPolicy(Enum):
    """Order in which a payment settles what is owed"""
    INTEREST_FIRST = "interest_first"     # fees, interest, then principal
    PRINCIPAL_FIRST = "principal_first"   # principal, interest, then fees


@dataclass(frozen=True)
class PaymentAllocation:
    """How much of a payment goes where"""
    principal: Decimal
    interest: Decimal
    fees: Decimal = ZERO
    
    @property
    def total(self) -> Decimal:
        return self.principal + self.interest + self.fees
    
    def to_dict(self) -> Dict[str, str]:
        return {
            'principal': str(self.principal),
            'interest': str(self.interest),
            'fees': str(self.fees)
        }


def allocate_payment(
    amount: Decimal,
    balance: Balance,
    policy: AllocationPolicy = AllocationPolicy.INTEREST_FIRST,
    loan_id: Optional[str] = None
) -> PaymentAllocation:
    """
    Split a payment by policy.
    
    Raises:
        ValidationError: amount is not positive
        OverpaymentError: amount exceeds balance.total
    """
    if amount <= ZERO:
        raise ValidationError("Payment amount must be positive", {'amount': str(amount)})
    if amount > balance.total:
        raise OverpaymentError(amount, balance.total, loan_id)
    
    if policy == AllocationPolicy.INTEREST_FIRST:
        order = (('fees', balance.fees), ('interest', balance.interest), ('principal', balance.principal))
    else:
        order = (('principal', balance.principal), ('interest', balance.interest), ('fees', balance.fees))
    
    remaining = amount
    portions = {'principal': ZERO, 'interest': ZERO, 'fees': ZERO}
    for name, owed in order:
        applied = min(remaining, owed)
        portions[name] = applied
        remaining -= applied
    
    return PaymentAllocation(**portions)


def validate_explicit_allocation(
    amount: Decimal,
    allocation: PaymentAllocation,
    balance: Balance,
    loan_id: Optional[str] = None
) -> PaymentAllocation:
    """
    Check a caller-supplied split and return it unchanged.
    
    The portions must be non-negative and add up to the payment exactly,
    and none may exceed what is owed on its component.
    """
    if amount <= ZERO:
        raise ValidationError("Payment amount must be positive", {'amount': str(amount)})
    for name, value in (('principal', allocation.principal), ('interest', allocation.interest),
                        ('fees', allocation.fees)):
        if value < ZERO:
            raise ValidationError(f"{name} portion cannot be negative", {name: str(value)})
    if allocation.total != amount:
        raise ValidationError(
            "Allocation portions must add up to the payment amount",
            {'amount': str(amount), 'allocated': str(allocation.total)}
        )
    if amount > balance.total:
        raise OverpaymentError(amount, balance.total, loan_id)
    for portion, owed in ((allocation.principal, balance.principal), (allocation.interest, balance.interest),
                          (allocation.fees, balance.fees)):
        if portion > owed:
            raise OverpaymentError(portion, owed, loan_id)
    return allocation


def allocate_settlement(amount: Decimal, balance: Balance) -> PaymentAllocation:
    """
    Split a settlement amount: fees, then interest, then principal.
    
    The settled amount is authoritative, so any excess stays on the
    principal portion instead of being rejected.
    """
    fees = min(amount, balance.fees)
    interest = min(amount - fees, balance.interest)
    return PaymentAllocation(principal=amount - fees - interest, interest=interest, fees=fees)
