"""
Schedule Aggregation Module

Read-side projection of a loan's persisted schedule: status counts, next
installment due, progress and totals for dashboards. Pure: the input rows are
never mutated and the same rows always produce the same summary.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from .models import InstallmentStatus, ScheduleInstallment


ZERO = Decimal('0')


@dataclass(frozen=True)
class ScheduleSummary:
    """Aggregated view of one loan's schedule"""
    total_installments: int
    paid_count: int
    overdue_count: int
    partially_paid_count: int
    pending_count: int
    next_due: Optional[ScheduleInstallment]
    progress_percentage: int
    total_paid: Decimal
    total_remaining: Decimal
    total_late_fees: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalInstallments': self.total_installments,
            'paidCount': self.paid_count,
            'overdueCount': self.overdue_count,
            'partiallyPaidCount': self.partially_paid_count,
            'pendingCount': self.pending_count,
            'nextDue': self.next_due.to_dict() if self.next_due else None,
            'progressPercentage': self.progress_percentage,
            'totalPaid': str(self.total_paid),
            'totalRemaining': str(self.total_remaining),
            'totalLateFees': str(self.total_late_fees),
        }


def summarize_schedule(installments: Iterable[ScheduleInstallment]) -> ScheduleSummary:
    """
    Summarize a loan's installment rows

    ``next_due`` is the first pending or partially paid row by installment
    number, ties broken by the earlier due date. ``total_remaining`` covers
    every non-paid row: total - paid + late fee.
    """
    rows = list(installments)
    counts = {status: 0 for status in InstallmentStatus}
    total_paid = ZERO
    total_remaining = ZERO
    total_late_fees = ZERO

    for row in rows:
        counts[row.status] += 1
        total_paid += row.paid_amount
        total_late_fees += row.late_fee
        if row.status != InstallmentStatus.PAID:
            total_remaining += row.total_amount - row.paid_amount + row.late_fee

    candidates = [
        row for row in rows
        if row.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIALLY_PAID)
    ]
    next_due = min(
        candidates, key=lambda row: (row.installment_number, row.due_date), default=None
    )

    total = len(rows)
    paid = counts[InstallmentStatus.PAID]
    if total:
        progress = int((Decimal(paid) * Decimal('100') / Decimal(total)).quantize(
            Decimal('1'), rounding=ROUND_HALF_UP
        ))
    else:
        progress = 0

    return ScheduleSummary(
        total_installments=total,
        paid_count=paid,
        overdue_count=counts[InstallmentStatus.OVERDUE],
        partially_paid_count=counts[InstallmentStatus.PARTIALLY_PAID],
        pending_count=counts[InstallmentStatus.PENDING],
        next_due=next_due,
        progress_percentage=progress,
        total_paid=total_paid,
        total_remaining=total_remaining,
        total_late_fees=total_late_fees,
    )
