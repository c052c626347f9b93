"""
Facility endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import LoanSystem, get_loan_system, to_http_exception
from .schemas import RegisterFacilityRequest
from ..exceptions import LoanEngineError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_facility(
    request: RegisterFacilityRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Register a credit facility"""
    try:
        facility = system.facilities.register_facility(
            bank_name=request.bank_name,
            facility_type=request.facility_type,
            credit_limit=request.credit_limit,
            cost_of_funding=request.cost_of_funding,
            enable_revolving_tracking=request.enable_revolving_tracking,
            max_revolving_period=request.max_revolving_period
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {
        "facility_id": facility.id,
        "message": "Facility registered successfully"
    }


@router.get("")
def list_facilities(system: LoanSystem = Depends(get_loan_system)):
    return {"facilities": [f.to_dict() for f in system.facilities.list_facilities()]}


@router.get("/{facility_id}")
def get_facility(
    facility_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    try:
        return system.facilities.get_facility(facility_id).to_dict()
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.get("/{facility_id}/revolving-usage")
def get_facility_revolving_usage(
    facility_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Cumulative revolving usage across the facility's loans"""
    try:
        return system.engine.get_revolving_usage(facility_id=facility_id).to_dict()
    except LoanEngineError as e:
        raise to_http_exception(e)
