"""
Loan Status Module

Loan lifecycle rules. Transition functions never mutate the loan they are
given: they return an updated copy, or raise InvalidTransitionError and leave
the original untouched.

    pending -> approved -> disbursed -> active -> completed
    pending | approved -> rejected                (terminal)
    active | late -> defaulted                    (terminal)
    active <-> late                               (display state)
"""

from datetime import date, datetime, timezone
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, Optional, Set

from .exceptions import InvalidTransitionError, ValidationError
from .models import InstallmentStatus, Loan, LoanStatus, ScheduleInstallment


TERMINAL_STATUSES: Set[LoanStatus] = {
    LoanStatus.REJECTED,
    LoanStatus.COMPLETED,
    LoanStatus.DEFAULTED,
}

ALLOWED_TRANSITIONS: Dict[LoanStatus, Set[LoanStatus]] = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED, LoanStatus.REJECTED},
    LoanStatus.DISBURSED: {LoanStatus.ACTIVE},
    LoanStatus.ACTIVE: {LoanStatus.LATE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.LATE: {LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.REJECTED: set(),
    LoanStatus.DEFAULTED: set(),
}

# States in which installments are being repaid
REPAYING_STATUSES: Set[LoanStatus] = {LoanStatus.ACTIVE, LoanStatus.LATE}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(loan: Loan, target: LoanStatus) -> None:
    """Raise InvalidTransitionError unless loan may move to target"""
    if loan.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            loan.status.value, target.value, reason=f"{loan.status.value} is terminal"
        )
    if not can_transition(loan.status, target):
        raise InvalidTransitionError(loan.status.value, target.value)


def _require_actor(actor_id: Optional[str], action: str) -> str:
    if not actor_id or not str(actor_id).strip():
        raise ValidationError(f"An authorizing actor is required to {action} a loan", field="actor_id")
    return str(actor_id)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def approve(loan: Loan, actor_id: str, monthly_payment: Decimal, now: Optional[datetime] = None) -> Loan:
    """pending -> approved; records who approved and the computed monthly payment"""
    actor_id = _require_actor(actor_id, "approve")
    ensure_transition(loan, LoanStatus.APPROVED)
    timestamp = _now(now)
    return replace(
        loan,
        status=LoanStatus.APPROVED,
        approved_at=timestamp,
        approved_by=actor_id,
        monthly_payment=monthly_payment,
        updated_at=timestamp,
    )


def reject(loan: Loan, actor_id: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> Loan:
    """Any pre-disbursement state -> rejected (terminal)"""
    actor_id = _require_actor(actor_id, "reject")
    ensure_transition(loan, LoanStatus.REJECTED)
    timestamp = _now(now)
    return replace(
        loan,
        status=LoanStatus.REJECTED,
        rejected_at=timestamp,
        rejected_by=actor_id,
        rejection_notes=notes,
        updated_at=timestamp,
    )


def mark_disbursed(loan: Loan, actor_id: str, now: Optional[datetime] = None) -> Loan:
    """approved -> disbursed; the caller has already passed the subsidy funds check"""
    actor_id = _require_actor(actor_id, "disburse")
    ensure_transition(loan, LoanStatus.DISBURSED)
    timestamp = _now(now)
    return replace(
        loan,
        status=LoanStatus.DISBURSED,
        disbursed_at=timestamp,
        disbursed_by=actor_id,
        updated_at=timestamp,
    )


def activate(loan: Loan, next_payment_date: Optional[date], now: Optional[datetime] = None) -> Loan:
    """disbursed -> active; disbursement itself activates the loan"""
    ensure_transition(loan, LoanStatus.ACTIVE)
    return replace(
        loan,
        status=LoanStatus.ACTIVE,
        next_payment_date=next_payment_date,
        updated_at=_now(now),
    )


def days_overdue(installment: ScheduleInstallment, as_of: date) -> int:
    """Whole days since an unpaid installment fell due (0 if not yet due or paid)"""
    if installment.status == InstallmentStatus.PAID or installment.due_date >= as_of:
        return 0
    return max(installment.days_overdue, (as_of - installment.due_date).days)


def derive_status(
    loan: Loan,
    installments: Iterable[ScheduleInstallment],
    as_of: date,
    default_threshold_days: Optional[int] = None
) -> LoanStatus:
    """
    Coarse status of a loan given its schedule

    Pre-disbursement and terminal statuses are returned unchanged. A disbursed
    or repaying loan is completed when every installment is paid, defaulted
    when an unpaid installment has been overdue for more than
    ``default_threshold_days`` (never, when the threshold is None), late when
    any installment is overdue, and active otherwise.
    """
    if loan.status not in REPAYING_STATUSES and loan.status != LoanStatus.DISBURSED:
        return loan.status

    rows = list(installments)
    if rows and all(row.status == InstallmentStatus.PAID for row in rows):
        return LoanStatus.COMPLETED

    overdue = []
    for row in rows:
        days = days_overdue(row, as_of)
        if days > 0 or row.status == InstallmentStatus.OVERDUE:
            overdue.append(max(days, row.days_overdue))

    if default_threshold_days is not None and any(days > default_threshold_days for days in overdue):
        return LoanStatus.DEFAULTED
    if overdue:
        return LoanStatus.LATE
    return LoanStatus.ACTIVE


def apply_derived_status(
    loan: Loan,
    installments: Iterable[ScheduleInstallment],
    as_of: date,
    default_threshold_days: Optional[int] = None,
    now: Optional[datetime] = None
) -> Loan:
    """Return the loan moved to its derived status (or unchanged)"""
    rows = list(installments)
    target = derive_status(loan, rows, as_of, default_threshold_days)
    if target == loan.status:
        return loan
    if loan.status == LoanStatus.DISBURSED:
        loan = activate(loan, loan.next_payment_date, now)
        if target == LoanStatus.ACTIVE:
            return loan
    ensure_transition(loan, target)
    timestamp = _now(now)
    changes = {'status': target, 'updated_at': timestamp}
    if target == LoanStatus.COMPLETED:
        changes['completed_at'] = timestamp
        changes['next_payment_date'] = None
    return replace(loan, **changes)
