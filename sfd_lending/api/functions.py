"""
Callable function endpoints

The two standalone units of the lending core: schedule calculation and
payment application.
"""

from fastapi import APIRouter, Depends

from .schemas import ApplyPaymentRequest, CalculateScheduleRequest
from .system import LendingSystem, get_lending_system
from ..amortization import compute_schedule
from ..currency import currency_from_code


router = APIRouter()


@router.post("/calculate-loan-schedule")
def calculate_loan_schedule(
    request: CalculateScheduleRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Monthly payment, totals and dated schedule for a prospective loan"""
    result = compute_schedule(
        principal=request.principal,
        annual_rate_percent=request.interest_rate,
        months=request.duration_months,
        start_date=request.start_date,
        currency=currency_from_code(system.config.currency),
    )
    return result.to_dict()


@router.post("/apply-loan-payment")
def apply_loan_payment(
    request: ApplyPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a repayment to the oldest outstanding installments"""
    result = system.payment_recorder.apply_payment(
        loan_id=request.loan_id,
        amount=request.amount,
        method=request.method,
        transaction_id=request.transaction_id,
    )
    return result.to_dict()
