"""
Facility Lookup

The engine only reads facilities. FacilityDirectory is the lookup it
depends on; StorageFacilityDirectory keeps facilities in the same storage
as loans so a standalone deployment has somewhere to register them.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .exceptions import FacilityNotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .models import Facility
from .money import ZERO, to_decimal, to_rate
from .storage import StorageInterface


class FacilityDirectory(ABC):
    """Read-only facility lookup"""
    
    @abstractmethod
    def get_facility(self, facility_id: str) -> Facility:
        """Return the facility or raise FacilityNotFoundError"""
        pass
    
    @abstractmethod
    def list_facilities(self) -> List[Facility]:
        pass


class StorageFacilityDirectory(FacilityDirectory):
    """Facilities persisted in the engine's storage"""
    
    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 table_name: str = "facilities"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = table_name
        self.logger = get_logger("loan_engine.facilities")
    
    def register_facility(
        self,
        bank_name: str,
        facility_type: str,
        credit_limit: Decimal,
        cost_of_funding: Decimal,
        enable_revolving_tracking: bool = False,
        max_revolving_period: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> Facility:
        """
        Register a credit facility
        
        Args:
            bank_name: Lending bank
            facility_type: Facility kind (revolving, term, ...)
            credit_limit: Maximum exposure on the facility
            cost_of_funding: Funding rate in percent
            enable_revolving_tracking: Whether loans are gated by the revolving window
            max_revolving_period: Window length in days
            user_id: User registering the facility
            
        Returns:
            Created Facility
        """
        if not bank_name or not bank_name.strip():
            raise ValidationError("Bank name is required")
        credit_limit = to_decimal(credit_limit, "credit_limit")
        if credit_limit <= ZERO:
            raise ValidationError("Credit limit must be positive", {'credit_limit': str(credit_limit)})
        cost_of_funding = to_rate(cost_of_funding, "cost_of_funding")
        if max_revolving_period is not None and max_revolving_period < 0:
            raise ValidationError(
                "Max revolving period cannot be negative",
                {'max_revolving_period': max_revolving_period}
            )
        
        now = datetime.now(timezone.utc)
        facility = Facility(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            bank_name=bank_name.strip(),
            facility_type=facility_type,
            credit_limit=credit_limit,
            cost_of_funding=cost_of_funding,
            enable_revolving_tracking=enable_revolving_tracking,
            max_revolving_period=max_revolving_period
        )
        
        with self.storage.atomic():
            self.storage.save(self.table_name, facility.id, facility.to_dict())
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.FACILITY_REGISTERED,
                    entity_type="facility",
                    entity_id=facility.id,
                    metadata={
                        "bank_name": facility.bank_name,
                        "facility_type": facility_type,
                        "credit_limit": str(credit_limit),
                        "enable_revolving_tracking": enable_revolving_tracking,
                        "max_revolving_period": max_revolving_period
                    },
                    user_id=user_id
                )
        
        log_action(self.logger, "info", f"Registered facility with {facility.bank_name}",
                   user_id=user_id, action="register_facility", resource=f"facility:{facility.id}")
        return facility
    
    def get_facility(self, facility_id: str) -> Facility:
        data = self.storage.load(self.table_name, facility_id)
        if not data:
            raise FacilityNotFoundError(facility_id)
        return Facility.from_dict(data)
    
    def list_facilities(self) -> List[Facility]:
        return [Facility.from_dict(data) for data in self.storage.load_all(self.table_name)]
