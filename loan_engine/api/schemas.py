"""
Pydantic schemas for API requests
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..allocation import PaymentAllocation
from ..whatif import EarlyPaymentScenario, RefinanceScenario, TermChangeScenario


# Facility schemas
class RegisterFacilityRequest(BaseModel):
    bank_name: str
    facility_type: str = "revolving"
    credit_limit: Decimal
    cost_of_funding: Decimal = Decimal("0")
    enable_revolving_tracking: bool = False
    max_revolving_period: Optional[int] = Field(None, description="Revolving window in days")


# Loan schemas
class CreateLoanRequest(BaseModel):
    facility_id: str
    principal_amount: Decimal
    base_rate: Decimal = Field(..., description="Index rate in percent (e.g. SIBOR)")
    margin: Decimal = Field(Decimal("0"), description="Bank margin in percent")
    start_date: date
    due_date: date
    reference_number: Optional[str] = None
    interest_basis: Optional[Literal["actual_365", "actual_360"]] = None
    notes: Optional[str] = None


class AllocationModel(BaseModel):
    principal: Decimal = Decimal("0")
    interest: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    
    def to_allocation(self) -> PaymentAllocation:
        return PaymentAllocation(principal=self.principal, interest=self.interest, fees=self.fees)


class PaymentRequest(BaseModel):
    amount: Decimal
    payment_date: Optional[date] = None
    allocation: Optional[AllocationModel] = None


class InterestPaymentRequest(BaseModel):
    amount: Decimal
    payment_date: Optional[date] = None


class ChargeFeeRequest(BaseModel):
    amount: Decimal
    fee_date: Optional[date] = None
    memo: Optional[str] = None


class SettleRequest(BaseModel):
    settlement_date: date
    settlement_amount: Optional[Decimal] = Field(None, description="Defaults to everything owed")


class ReverseSettlementRequest(BaseModel):
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str
    cancel_date: Optional[date] = None


class RevolveRequest(BaseModel):
    new_due_date: date
    new_base_rate: Optional[Decimal] = None
    new_margin: Optional[Decimal] = None
    revolve_date: Optional[date] = None


# What-if schemas
class RefinanceRequest(BaseModel):
    scenario_type: Literal["refinance"]
    new_rate: Decimal
    
    def to_scenario(self) -> RefinanceScenario:
        return RefinanceScenario(new_rate=self.new_rate)


class EarlyPaymentRequest(BaseModel):
    scenario_type: Literal["early_payment"]
    payment_amount: Decimal
    payment_date: Optional[date] = None
    
    def to_scenario(self) -> EarlyPaymentScenario:
        return EarlyPaymentScenario(payment_amount=self.payment_amount, payment_date=self.payment_date)


class TermChangeRequest(BaseModel):
    scenario_type: Literal["term_change"]
    new_duration_days: int
    
    def to_scenario(self) -> TermChangeScenario:
        return TermChangeScenario(new_duration_days=self.new_duration_days)


ScenarioRequest = Annotated[
    Union[RefinanceRequest, EarlyPaymentRequest, TermChangeRequest],
    Field(discriminator="scenario_type")
]


class SimulateRequest(BaseModel):
    scenario: ScenarioRequest
