"""
Engine wiring and error mapping shared by the routers
"""

from typing import Optional

from fastapi import HTTPException

from ..audit import AuditTrail
from ..config import EngineConfig, get_config
from ..engine import LoanEngine
from ..exceptions import (
    ConcurrentModificationError, FacilityNotFoundError, IdempotencyConflictError,
    InvalidStateError, LoanEngineError, LoanNotFoundError, OverpaymentError,
    RevolvingPeriodExceededError, ValidationError
)
from ..facilities import StorageFacilityDirectory
from ..storage import create_storage


class LoanSystem:
    """Storage, audit trail, facility directory and engine built from one config"""
    
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()
        self.storage = create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.facilities = StorageFacilityDirectory(self.storage, self.audit_trail)
        self.engine = LoanEngine(
            self.storage,
            self.facilities,
            audit_trail=self.audit_trail,
            config=self.config
        )
    
    def close(self) -> None:
        self.storage.close()


_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Process-wide LoanSystem, created on first use"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system


_STATUS_CODES = (
    (LoanNotFoundError, 404),
    (FacilityNotFoundError, 404),
    (OverpaymentError, 422),
    (RevolvingPeriodExceededError, 409),
    (InvalidStateError, 409),
    (ConcurrentModificationError, 409),
    (IdempotencyConflictError, 409),
    (ValidationError, 400),
)


def to_http_exception(error: LoanEngineError) -> HTTPException:
    """Map an engine error to its HTTP status; details travel in the body"""
    status_code = 400
    for error_type, code in _STATUS_CODES:
        if isinstance(error, error_type):
            status_code = code
            break
    return HTTPException(
        status_code=status_code,
        detail={
            "error": type(error).__name__,
            "message": error.message,
            "details": error.details
        }
    )
