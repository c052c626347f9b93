"""
Decimal Money Helpers

Single-currency amounts are plain Decimal values. NEVER uses float for
monetary values; floats are converted through their string form.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')
HUNDRED = Decimal('100')
MONEY_PLACES = 2

Numeric = Union[Decimal, int, str, float]


def to_decimal(value: Numeric, field_name: str = "amount") -> Decimal:
    """Convert input to Decimal, rejecting anything non-numeric or non-finite"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric", {field_name: value})
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be numeric", {field_name: value})
    
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite", {field_name: str(value)})
    return result


def round_money(amount: Decimal, places: int = MONEY_PLACES) -> Decimal:
    """Round to currency precision"""
    return amount.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def to_money(value: Numeric, field_name: str = "amount", places: int = MONEY_PLACES) -> Decimal:
    """Parse and round a monetary input"""
    return round_money(to_decimal(value, field_name), places)


def to_rate(value: Numeric, field_name: str = "rate") -> Decimal:
    """Parse a percentage rate (5.75 means 5.75%)"""
    return to_decimal(value, field_name)


def format_amount(amount: Decimal, currency_code: str = "SAR", places: int = MONEY_PLACES) -> str:
    """Format for display"""
    return f"{currency_code} {round_money(amount, places):,.{places}f}"
