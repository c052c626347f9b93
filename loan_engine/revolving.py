"""
Revolving Period Tracker

Measures how much of a facility's revolving window (in days) has been
used, either cumulatively across the facility's loans or for one loan in
flight. Everything is recomputed from loan dates on each call.
"""

import math
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from .daycount import reporting_today
from .exceptions import RevolvingPeriodExceededError, ValidationError
from .models import Facility, Loan, RevolvingUsage, UsageStatus


DEFAULT_WARNING_THRESHOLD = 70.0
DEFAULT_CRITICAL_THRESHOLD = 90.0


def _valid_period(max_period) -> Optional[float]:
    """max_period as a usable positive finite number, else None"""
    try:
        value = float(max_period)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def percentage_used(days_used: int, max_period) -> float:
    """Share of the window used, 0-100 with one decimal; 0 for a zero/invalid window"""
    period = _valid_period(max_period)
    if period is None:
        return 0.0
    percentage = days_used / period * 100
    if not math.isfinite(percentage):
        return 0.0
    rounded = float(Decimal(repr(percentage)).quantize(Decimal('0.1'), rounding=ROUND_HALF_UP))
    return min(100.0, max(0.0, rounded))


def days_remaining(days_used: int, max_period) -> int:
    period = _valid_period(max_period)
    if period is None:
        return 0
    return max(0, int(Decimal(repr(period - days_used)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)))


def usage_status(
    percentage: float,
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
) -> UsageStatus:
    if percentage >= 100:
        return UsageStatus.EXPIRED
    if percentage >= critical_threshold:
        return UsageStatus.CRITICAL
    if percentage >= warning_threshold:
        return UsageStatus.WARNING
    return UsageStatus.AVAILABLE


def allocated_days(loan: Loan) -> int:
    """
    Term a loan takes out of the facility window: start to due date, or to
    the settlement date when the loan was settled early.
    """
    end = loan.due_date
    if loan.settled_date and loan.settled_date < end:
        end = loan.settled_date
    return max(0, (end - loan.start_date).days)


def _require_tracking(facility: Facility) -> None:
    if not facility.enable_revolving_tracking:
        raise ValidationError(
            "Revolving period tracking is not enabled for this facility",
            {'facility_id': facility.id}
        )


class RevolvingPeriodTracker:
    """Facility-level and loan-level revolving usage"""
    
    def __init__(
        self,
        warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
        critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
    ):
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
    
    def _usage(self, facility: Facility, days_used: int, **extra) -> RevolvingUsage:
        percentage = percentage_used(days_used, facility.max_revolving_period)
        remaining = days_remaining(days_used, facility.max_revolving_period)
        return RevolvingUsage(
            days_used=days_used,
            days_remaining=remaining,
            percentage_used=percentage,
            status=usage_status(percentage, self.warning_threshold, self.critical_threshold),
            can_revolve=remaining > 0,
            max_revolving_period=facility.max_revolving_period,
            facility_id=facility.id,
            **extra
        )
    
    def facility_usage(self, facility: Facility, loans: Iterable[Loan]) -> RevolvingUsage:
        """
        Cumulative allocated days over every loan ever drawn on the facility.
        
        Cancelled loans keep their full term; cancelling does not give days back.
        """
        _require_tracking(facility)
        facility_loans = [loan for loan in loans if loan.facility_id == facility.id]
        days_used = sum(allocated_days(loan) for loan in facility_loans)
        return self._usage(
            facility,
            days_used,
            active_loans=sum(1 for loan in facility_loans if loan.is_active),
            total_loans=len(facility_loans)
        )
    
    def loan_usage(self, facility: Facility, loan: Loan, today: Optional[date] = None) -> RevolvingUsage:
        """Elapsed days of one loan: start to the earlier of today and its end date"""
        _require_tracking(facility)
        today = today or reporting_today()
        end = loan.settled_date or loan.due_date
        if today < end:
            end = today
        days_used = max(0, (end - loan.start_date).days)
        return self._usage(facility, days_used, loan_id=loan.id, loan_status=loan.status)
    
    def ensure_capacity(
        self,
        facility: Facility,
        loans: Iterable[Loan],
        requested_days: int
    ) -> Optional[RevolvingUsage]:
        """
        Check that requested_days more fit in the facility window.
        
        Facilities without tracking always pass (the returned usage is None).
        
        Raises:
            RevolvingPeriodExceededError: not enough days remain
        """
        if not facility.enable_revolving_tracking:
            return None
        usage = self.facility_usage(facility, loans)
        if requested_days > usage.days_remaining:
            raise RevolvingPeriodExceededError(facility.id, requested_days, usage.days_remaining)
        return usage
