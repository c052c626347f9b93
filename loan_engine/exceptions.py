"""
Engine Exceptions

Every rejected action raises one of these before anything is written, so
callers can treat them as recoverable. Storage failures are not wrapped.
"""

from typing import Any, Dict, Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors"""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(LoanEngineError, ValueError):
    """Malformed amount or date input (negative principal, due before start, ...)"""
    pass


class InvalidStateError(LoanEngineError):
    """Lifecycle transition attempted from a disallowed state"""
    
    def __init__(self, loan_id: str, current_status: str, action: str, allowed: Optional[list] = None):
        details = {
            'loan_id': loan_id,
            'status': current_status,
            'action': action
        }
        if allowed:
            details['allowed_from'] = allowed
        super().__init__(f"Cannot {action} loan in status '{current_status}'", details)


class OverpaymentError(LoanEngineError, ValueError):
    """Payment exceeds what is outstanding"""
    
    def __init__(self, amount, outstanding, loan_id: Optional[str] = None):
        details = {
            'amount': str(amount),
            'outstanding': str(outstanding)
        }
        if loan_id:
            details['loan_id'] = loan_id
        super().__init__(f"Payment {amount} exceeds outstanding {outstanding}", details)


class RevolvingPeriodExceededError(LoanEngineError, ValueError):
    """Requested term does not fit in the facility's remaining revolving days"""
    
    def __init__(self, facility_id: str, requested_days: int, days_remaining: int):
        super().__init__(
            f"Requested {requested_days} days but only {days_remaining} revolving days remain",
            {
                'facility_id': facility_id,
                'requested_days': requested_days,
                'days_remaining': days_remaining
            }
        )


class LoanNotFoundError(LoanEngineError, LookupError):
    """Raised when a loan cannot be found"""
    
    def __init__(self, loan_id: str):
        super().__init__(f"Loan '{loan_id}' not found", {'loan_id': loan_id})


class FacilityNotFoundError(LoanEngineError, LookupError):
    """Raised when a facility cannot be found"""
    
    def __init__(self, facility_id: str):
        super().__init__(f"Facility '{facility_id}' not found", {'facility_id': facility_id})


class ConcurrentModificationError(LoanEngineError):
    """The loan record changed between read and write"""
    
    def __init__(self, loan_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Loan '{loan_id}' was modified concurrently",
            {
                'loan_id': loan_id,
                'expected_version': expected_version,
                'actual_version': actual_version
            }
        )


class IdempotencyConflictError(LoanEngineError):
    """An idempotency key was replayed with different parameters"""
    
    def __init__(self, idempotency_key: str, loan_id: str):
        super().__init__(
            f"Idempotency key '{idempotency_key}' was already used with different parameters",
            {'idempotency_key': idempotency_key, 'loan_id': loan_id}
        )
