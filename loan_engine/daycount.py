"""
Day-Count Calculator

Simple (non-compounding) interest on a principal over a number of elapsed
calendar days:

    interest = principal * (annual_rate_percent / 100) * days / basis_days

Timestamps are truncated to calendar dates in the reporting timezone before
any day count, so the same instant always yields the same day number.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo

from .money import ZERO, HUNDRED, to_decimal


class InterestBasis(Enum):
    """Day-count conventions"""
    ACTUAL_365 = "actual_365"   # Actual days / 365
    ACTUAL_360 = "actual_360"   # Actual days / 360
    
    @property
    def basis_days(self) -> int:
        return 360 if self is InterestBasis.ACTUAL_360 else 365


DateLike = Union[date, datetime]


def to_reporting_date(value: DateLike, tz_name: Optional[str] = None) -> date:
    """
    Truncate a date or datetime to a calendar date in the reporting timezone.
    
    Naive datetimes are taken as UTC. Plain dates pass through unchanged.
    """
    if isinstance(value, datetime):
        if tz_name is None:
            from .config import get_config
            tz_name = get_config().reporting_timezone
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(ZoneInfo(tz_name)).date()
    return value


def reporting_today(tz_name: Optional[str] = None) -> date:
    """Today's date in the reporting timezone"""
    return to_reporting_date(datetime.now(timezone.utc), tz_name)


def elapsed_days(start: DateLike, end: DateLike) -> int:
    """Whole days from start to end, clamped at zero"""
    days = (to_reporting_date(end) - to_reporting_date(start)).days
    return max(0, days)


def accrued_interest(
    principal: Decimal,
    annual_rate_percent: Decimal,
    start: DateLike,
    end: DateLike,
    basis: InterestBasis = InterestBasis.ACTUAL_365
) -> Decimal:
    """
    Accrued simple interest between two dates.
    
    Never negative: an end before the start counts as zero days, and a
    non-positive rate or principal yields zero. The result is unrounded;
    callers round once at the reporting boundary.
    """
    principal = to_decimal(principal, "principal")
    rate = to_decimal(annual_rate_percent, "annual_rate_percent")
    if rate <= ZERO or principal <= ZERO:
        return ZERO
    
    days = elapsed_days(start, end)
    if days == 0:
        return ZERO
    
    return principal * (rate / HUNDRED) * Decimal(days) / Decimal(basis.basis_days)


def daily_interest(
    principal: Decimal,
    annual_rate_percent: Decimal,
    basis: InterestBasis = InterestBasis.ACTUAL_365
) -> Decimal:
    """Interest for a single day"""
    rate = to_decimal(annual_rate_percent, "annual_rate_percent")
    if rate <= ZERO:
        return ZERO
    return to_decimal(principal, "principal") * (rate / HUNDRED) / Decimal(basis.basis_days)
