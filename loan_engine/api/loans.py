"""
Loan endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from .dependencies import LoanSystem, get_loan_system, to_http_exception
from .schemas import (
    CancelRequest, ChargeFeeRequest, CreateLoanRequest, InterestPaymentRequest,
    PaymentRequest, ReverseSettlementRequest, RevolveRequest, SettleRequest,
    SimulateRequest
)
from ..exceptions import LoanEngineError
from ..models import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Draw a new loan on a facility"""
    try:
        loan = system.engine.create_loan(
            facility_id=request.facility_id,
            principal_amount=request.principal_amount,
            base_rate=request.base_rate,
            margin=request.margin,
            start_date=request.start_date,
            due_date=request.due_date,
            reference_number=request.reference_number,
            interest_basis=request.interest_basis,
            notes=request.notes
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {
        "loan_id": loan.id,
        "reference_number": loan.reference_number,
        "status": loan.status.value,
        "message": "Loan created successfully"
    }


@router.get("")
def list_loans(
    facility_id: Optional[str] = None,
    loan_status: Optional[str] = Query(None, alias="status"),
    system: LoanSystem = Depends(get_loan_system)
):
    """List loans, optionally by facility and status"""
    try:
        status_filter = LoanStatus(loan_status) if loan_status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown loan status: {loan_status}")
    
    loans = system.engine.list_loans(facility_id=facility_id, status=status_filter)
    return {"loans": [loan.to_dict() for loan in loans]}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Loan details with balance, accrued and projected interest"""
    try:
        return system.engine.get_loan_summary(loan_id)
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/balance")
def get_balance(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Outstanding balance as of a date"""
    try:
        return system.engine.get_balance(loan_id, as_of).to_dict()
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/ledger")
def get_ledger(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Ledger transactions in append order"""
    try:
        transactions = system.engine.get_ledger(loan_id)
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {"transactions": [t.to_dict() for t in transactions]}


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: str,
    request: PaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Record a repayment"""
    try:
        transaction = system.engine.record_payment(
            loan_id=loan_id,
            amount=request.amount,
            payment_date=request.payment_date,
            allocation=request.allocation.to_allocation() if request.allocation else None,
            idempotency_key=idempotency_key
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return transaction.to_dict()


@router.post("/{loan_id}/interest-payments", status_code=status.HTTP_201_CREATED)
def pay_interest(
    loan_id: str,
    request: InterestPaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Pay interest only"""
    try:
        transaction = system.engine.pay_interest(
            loan_id=loan_id,
            amount=request.amount,
            payment_date=request.payment_date,
            idempotency_key=idempotency_key
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return transaction.to_dict()


@router.post("/{loan_id}/fees", status_code=status.HTTP_201_CREATED)
def charge_fee(
    loan_id: str,
    request: ChargeFeeRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Assess a fee"""
    try:
        transaction = system.engine.charge_fee(
            loan_id=loan_id,
            amount=request.amount,
            fee_date=request.fee_date,
            memo=request.memo,
            idempotency_key=idempotency_key
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return transaction.to_dict()


@router.post("/{loan_id}/settle")
def settle_loan(
    loan_id: str,
    request: SettleRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Settle a loan"""
    try:
        loan = system.engine.settle(
            loan_id=loan_id,
            settlement_date=request.settlement_date,
            settlement_amount=request.settlement_amount,
            idempotency_key=idempotency_key
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "settled_date": loan.settled_date.isoformat(),
        "settled_amount": str(loan.settled_amount),
        "message": "Loan settled successfully"
    }


@router.post("/{loan_id}/reverse-settlement")
def reverse_settlement(
    loan_id: str,
    request: ReverseSettlementRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Reopen a settled loan"""
    try:
        loan = system.engine.reverse_settlement(loan_id, reason=request.reason)
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "message": "Settlement reversed successfully"
    }


@router.post("/{loan_id}/cancel")
def cancel_loan(
    loan_id: str,
    request: CancelRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Cancel an active loan"""
    try:
        loan = system.engine.cancel(loan_id, reason=request.reason, cancel_date=request.cancel_date)
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "cancelled_date": loan.cancelled_date.isoformat(),
        "message": "Loan cancelled successfully"
    }


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Permanently delete a cancelled loan"""
    try:
        result = system.engine.permanently_delete(loan_id)
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    result["message"] = "Loan permanently deleted"
    return result


@router.post("/{loan_id}/revolve")
def revolve_loan(
    loan_id: str,
    request: RevolveRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Roll a loan forward to a new due date"""
    try:
        loan = system.engine.revolve(
            loan_id=loan_id,
            new_due_date=request.new_due_date,
            new_base_rate=request.new_base_rate,
            new_margin=request.new_margin,
            revolve_date=request.revolve_date,
            idempotency_key=idempotency_key
        )
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return {
        "loan_id": loan.id,
        "due_date": loan.due_date.isoformat(),
        "annual_rate": str(loan.annual_rate),
        "message": "Loan revolved successfully"
    }


@router.get("/{loan_id}/revolving-usage")
def get_loan_revolving_usage(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Elapsed revolving days of one loan"""
    try:
        return system.engine.get_revolving_usage(loan_id=loan_id).to_dict()
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/what-if")
def simulate(
    loan_id: str,
    request: SimulateRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Evaluate a refinance, early payment or term change scenario"""
    try:
        result = system.engine.simulate(loan_id, request.scenario.to_scenario())
    except LoanEngineError as e:
        raise to_http_exception(e)
    
    return result.to_dict()


@router.get("/{loan_id}/audit")
def get_audit_history(
    loan_id: str,
    limit: Optional[int] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Audit events recorded for a loan"""
    events = system.engine.get_audit_history(loan_id, limit)
    return {"events": [event.to_dict() for event in events]}
