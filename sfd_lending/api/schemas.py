"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Accepts both the camelCase wire names and the snake_case field names"""
    model_config = ConfigDict(populate_by_name=True)


# Callable functions
class CalculateScheduleRequest(CamelModel):
    principal: Decimal
    interest_rate: Decimal = Field(..., alias="interestRate", description="Annual rate in percent")
    duration_months: int = Field(..., alias="durationMonths")
    start_date: date = Field(..., alias="startDate")


class ApplyPaymentRequest(CamelModel):
    loan_id: str = Field(..., alias="loanId")
    amount: Decimal
    method: str = Field("cash", description="cash, mobile_money, bank_transfer or sfd_account")
    transaction_id: Optional[str] = Field(None, alias="transactionId", description="Idempotency key")


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str
    sfd_id: str
    amount: Decimal
    duration_months: int
    interest_rate: Decimal
    purpose: str = ""
    subsidy_amount: Decimal = Decimal('0')
    subsidy_rate: Decimal = Decimal('0')


class RejectLoanRequest(BaseModel):
    notes: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    subsidy_id: Optional[str] = None


# Subsidy schemas
class AllocateGrantRequest(BaseModel):
    sfd_id: str
    amount: Decimal
    end_date: Optional[date] = None
