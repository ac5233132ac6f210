"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .schemas import CreateLoanRequest, DisburseLoanRequest, RejectLoanRequest
from .system import LendingSystem, get_actor_id, get_lending_system
from ..models import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a loan application"""
    loan = system.loan_manager.create_application(
        client_id=request.client_id,
        sfd_id=request.sfd_id,
        amount=request.amount,
        duration_months=request.duration_months,
        interest_rate=request.interest_rate,
        purpose=request.purpose,
        subsidy_amount=request.subsidy_amount,
        subsidy_rate=request.subsidy_rate,
    )
    return loan.to_dict()


@router.get("/upcoming-installments")
def get_upcoming_installments(
    within_days: int = 7,
    system: LendingSystem = Depends(get_lending_system)
):
    """Unpaid installments falling due soon, for payment reminders"""
    rows = system.loan_manager.upcoming_installments(within_days)
    return {"installments": [row.to_dict() for row in rows]}


@router.post("/process-overdue")
def process_overdue_loans(system: LendingSystem = Depends(get_lending_system)):
    """Refresh late fees and statuses of every repaying loan"""
    return system.loan_manager.process_overdue_loans()


@router.get("/client/{client_id}")
def list_client_loans(client_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Loans of a client"""
    return {"loans": [loan.to_dict() for loan in system.loan_manager.list_client_loans(client_id)]}


@router.get("/sfd/{sfd_id}")
def list_sfd_loans(
    sfd_id: str,
    status: Optional[LoanStatus] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Loans granted by an SFD, optionally filtered by status"""
    loans = system.loan_manager.list_sfd_loans(sfd_id, status)
    return {"loans": [loan.to_dict() for loan in loans]}


@router.get("/{loan_id}")
def get_loan(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get loan details"""
    return system.loan_manager.get_loan(loan_id).to_dict()


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve a pending loan"""
    return system.loan_manager.approve_loan(loan_id, actor_id).to_dict()


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reject a loan before disbursement"""
    return system.loan_manager.reject_loan(loan_id, actor_id, request.notes).to_dict()


@router.post("/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse an approved loan and materialize its schedule"""
    return system.loan_manager.disburse_loan(loan_id, actor_id, request.subsidy_id).to_dict()


@router.get("/{loan_id}/schedule")
def get_schedule(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Repayment schedule ordered by installment number"""
    system.loan_manager.get_loan(loan_id)
    return {
        "loan_id": loan_id,
        "installments": [row.to_dict() for row in system.loan_manager.get_schedule(loan_id)],
    }


@router.get("/{loan_id}/summary")
def get_schedule_summary(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Schedule summary for dashboards"""
    return system.loan_manager.get_schedule_summary(loan_id).to_dict()


@router.get("/{loan_id}/payments")
def get_loan_payments(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Payment history"""
    system.loan_manager.get_loan(loan_id)
    return {"payments": [payment.to_dict() for payment in system.loan_manager.get_loan_payments(loan_id)]}


@router.post("/{loan_id}/refresh-status")
def refresh_loan_status(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Re-derive a loan's status from its schedule"""
    return system.loan_manager.refresh_loan_status(loan_id).to_dict()
