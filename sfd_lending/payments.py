"""
Payment Recording Module

Applies incoming repayments to a loan's schedule, oldest installment first,
and keeps late fees and overdue counters current. Every payment is one
read-modify-write inside a single storage transaction, keyed by its external
transaction reference so a retried request is never applied twice.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import uuid

from .config import LendingConfig, get_config
from .currency import Currency, Money, currency_from_code, round_amount, to_decimal, total
from .events import EventDispatcher, LendingEvent
from .exceptions import (
    InvalidTransitionError, NotFoundError, OverpaymentError, ValidationError
)
from .logging_config import log_action
from .models import (
    InstallmentStatus, Loan, LoanPayment, LoanStatus, PaymentMethod, PaymentStatus,
    ScheduleInstallment
)
from .status import REPAYING_STATUSES, apply_derived_status, days_overdue
from .storage import StorageInterface, transactional


ZERO = Decimal('0')

# (installment, days overdue) -> late fee owed on that installment
LateFeePolicy = Callable[[ScheduleInstallment, int], Decimal]


class PercentageLateFeePolicy:
    """
    Flat late fee of ``rate`` times the installment amount, charged once an
    installment is more than ``grace_days`` overdue
    """

    def __init__(self, rate: Decimal, grace_days: int = 0, currency: Currency = Currency.XOF):
        if rate < ZERO:
            raise ValidationError("Late fee rate cannot be negative", field="late_fee_rate", value=rate)
        self.rate = rate
        self.grace_days = grace_days
        self.currency = currency

    def __call__(self, installment: ScheduleInstallment, overdue_days: int) -> Decimal:
        if overdue_days <= self.grace_days:
            return ZERO
        return round_amount(installment.total_amount * self.rate, self.currency)


@dataclass
class PaymentResult:
    """Outcome of one applied payment"""
    payment: LoanPayment
    updated_installments: List[ScheduleInstallment] = field(default_factory=list)
    loan: Optional[Loan] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape returned by the apply-loan-payment function"""
        return {
            'updatedInstallments': [row.to_dict() for row in self.updated_installments],
            'payment': self.payment.to_dict(),
            'loanStatus': self.loan.status.value if self.loan else None,
            'replayed': self.replayed,
        }


class PaymentRecorder:
    """
    Applies payments and late fees to persisted schedule rows
    """

    def __init__(
        self,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None,
        late_fee_policy: Optional[LateFeePolicy] = None
    ):
        self.storage = storage
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.currency = currency_from_code(self.config.currency)
        self.logger = logging.getLogger("sfd_lending.payments")

        if late_fee_policy is None and self.config.late_fee_rate is not None:
            late_fee_policy = PercentageLateFeePolicy(
                self.config.late_fee_rate, self.config.late_fee_grace_days, self.currency
            )
        # None: no late fees accrue
        self.late_fee_policy = late_fee_policy

        self.loans_table = "loans"
        self.installments_table = "schedule_installments"
        self.payments_table = "loan_payments"

    def get_installments(self, loan_id: str) -> List[ScheduleInstallment]:
        """Schedule rows of a loan ordered by installment number"""
        rows = [
            ScheduleInstallment.from_dict(data)
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        rows.sort(key=lambda row: row.installment_number)
        return rows

    def outstanding_balance(self, loan_id: str) -> Decimal:
        """Everything still owed on a loan, late fees included"""
        return total((row.amount_due for row in self.get_installments(loan_id)), self.currency).amount

    def find_payment(self, transaction_id: str) -> Optional[LoanPayment]:
        """Payment previously recorded under an external transaction reference"""
        matches = self.storage.find(self.payments_table, {"transaction_id": transaction_id})
        if not matches:
            return None
        return LoanPayment.from_dict(matches[0])

    def apply_payment(
        self,
        loan_id: str,
        amount,
        method=PaymentMethod.CASH,
        transaction_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentResult:
        """
        Apply a repayment to the oldest outstanding installments

        Each installment's late fee is settled before its principal and
        interest. A payment covering an installment marks it paid and carries
        the remainder to the next one; a short payment marks the installment
        partially paid and stops there.

        Args:
            loan_id: Loan being repaid
            amount: Amount received, in whole currency units
            method: PaymentMethod or its string value
            transaction_id: External reference; replaying it returns the
                original result without applying the payment again
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            PaymentResult with the installments this payment touched

        Raises:
            ValidationError: Non-positive or fractional amount, unknown method
            NotFoundError: Unknown loan
            InvalidTransitionError: Loan is not being repaid
            OverpaymentError: Amount exceeds the total outstanding balance
        """
        requested = self._amount(amount)
        method = self._method(method)
        now = now or datetime.now(timezone.utc)
        transaction_id = transaction_id or str(uuid.uuid4())

        result, newly_overdue, previous_status = self._transactional(
            lambda: self._apply(loan_id, requested, method, transaction_id, now),
            "apply_payment",
        )

        if result.replayed:
            self.logger.info(f"Payment {transaction_id} on loan {loan_id} already applied, returning prior result")
            return result

        log_action(
            self.logger, "info", "Loan payment applied",
            action="payment.apply", resource=loan_id,
            extra={
                "transaction_id": transaction_id,
                "amount": requested,
                "installments": ",".join(str(n) for n in result.payment.allocations),
            }
        )
        self.publish_overdue(loan_id, newly_overdue)
        self.dispatcher.emit(
            LendingEvent.PAYMENT_RECEIVED, "loan", loan_id,
            payment_id=result.payment.id, amount=requested,
            method=method.value, transaction_id=transaction_id
        )
        publish_status_change(self.dispatcher, previous_status, result.loan)
        return result

    def _apply(
        self,
        loan_id: str,
        requested: Decimal,
        method: PaymentMethod,
        transaction_id: str,
        now: datetime
    ) -> Tuple[PaymentResult, List[ScheduleInstallment], LoanStatus]:
        previous = self.find_payment(transaction_id)
        if previous:
            return self._replay(previous, loan_id), [], LoanStatus.ACTIVE

        loan = self._load_loan(loan_id)
        if loan.status not in REPAYING_STATUSES:
            raise InvalidTransitionError(
                loan.status.value, "repaying",
                reason="payments are only accepted on active or late loans"
            )

        rows, newly_overdue = self.refresh_in_transaction(loan_id, now)
        outstanding = total((row.amount_due for row in rows), self.currency)
        if requested > outstanding.amount:
            excess = Money(requested, self.currency) - outstanding
            self.logger.warning(
                f"Rejected payment on loan {loan_id}: exceeds outstanding {outstanding.to_string()} "
                f"by {excess.to_string()}"
            )
            raise OverpaymentError(loan_id, requested, outstanding.amount)

        remaining = requested
        allocations: Dict[int, Decimal] = {}
        updated: List[ScheduleInstallment] = []
        by_number = {row.installment_number: row for row in rows}

        for row in rows:
            if remaining <= ZERO:
                break
            if not row.is_outstanding:
                continue
            due = row.amount_due
            if remaining >= due:
                applied = due
                row = replace(
                    row,
                    status=InstallmentStatus.PAID,
                    paid_amount=row.total_amount + row.late_fee,
                    paid_at=now,
                    days_overdue=days_overdue(row, now.date()),
                    updated_at=now,
                )
            else:
                applied = remaining
                row = replace(
                    row,
                    status=InstallmentStatus.PARTIALLY_PAID,
                    paid_amount=row.paid_amount + applied,
                    updated_at=now,
                )
            remaining -= applied
            allocations[row.installment_number] = applied
            version = self.storage.save_versioned(
                self.installments_table, row.id, row.to_dict(), row.version
            )
            row = replace(row, version=version)
            by_number[row.installment_number] = row
            updated.append(row)

        payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            amount=requested,
            payment_method=method,
            transaction_id=transaction_id,
            payment_date=now,
            status=PaymentStatus.COMPLETED,
            allocations=allocations,
        )
        payment = replace(
            payment,
            version=self.storage.save_versioned(self.payments_table, payment.id, payment.to_dict(), 0)
        )

        schedule = [by_number[number] for number in sorted(by_number)]
        next_due = next((row.due_date for row in schedule if row.is_outstanding), None)
        updated_loan = replace(loan, last_payment_date=now.date(), next_payment_date=next_due, updated_at=now)
        updated_loan = apply_derived_status(
            updated_loan, schedule, now.date(), self.config.default_threshold_days, now
        )
        updated_loan = replace(
            updated_loan,
            version=self.storage.save_versioned(
                self.loans_table, loan.id, updated_loan.to_dict(), loan.version
            )
        )

        result = PaymentResult(payment=payment, updated_installments=updated, loan=updated_loan)
        return result, newly_overdue, loan.status

    def _replay(self, payment: LoanPayment, loan_id: str) -> PaymentResult:
        if payment.loan_id != loan_id:
            raise ValidationError(
                f"Transaction {payment.transaction_id} was already used for another loan",
                field="transaction_id", loan_id=payment.loan_id
            )
        rows = {row.installment_number: row for row in self.get_installments(loan_id)}
        touched = [rows[number] for number in sorted(payment.allocations) if number in rows]
        return PaymentResult(
            payment=payment,
            updated_installments=touched,
            loan=self._load_loan(loan_id),
            replayed=True,
        )

    def refresh_late_fees(self, loan_id: str, now: Optional[datetime] = None) -> List[ScheduleInstallment]:
        """
        Recompute overdue days and late fees for a loan's past-due rows

        Pending rows whose due date has passed become overdue. Fees come from
        the configured policy and never decrease.
        """
        now = now or datetime.now(timezone.utc)
        rows, newly_overdue = self._transactional(
            lambda: self.refresh_in_transaction(loan_id, now), "refresh_late_fees"
        )
        self.publish_overdue(loan_id, newly_overdue)
        return rows

    def refresh_in_transaction(
        self,
        loan_id: str,
        now: datetime
    ) -> Tuple[List[ScheduleInstallment], List[ScheduleInstallment]]:
        """
        Late-fee refresh for callers already inside the storage transaction.
        Returns the full ordered schedule and the rows that just became overdue.
        """
        as_of = now.date()
        schedule = []
        newly_overdue = []

        with self.storage.atomic():
            for row in self.get_installments(loan_id):
                refreshed = self._refresh_row(row, as_of)
                if refreshed is not row:
                    refreshed = replace(refreshed, updated_at=now)
                    version = self.storage.save_versioned(
                        self.installments_table, row.id, refreshed.to_dict(), row.version
                    )
                    refreshed = replace(refreshed, version=version)
                    if row.status == InstallmentStatus.PENDING and refreshed.status == InstallmentStatus.OVERDUE:
                        newly_overdue.append(refreshed)
                schedule.append(refreshed)

        return schedule, newly_overdue

    def _refresh_row(self, row: ScheduleInstallment, as_of: date) -> ScheduleInstallment:
        """Return the row with current overdue figures, or the same object if unchanged"""
        overdue_days = days_overdue(row, as_of)
        if overdue_days <= 0:
            return row

        changes: Dict[str, Any] = {}
        if overdue_days != row.days_overdue:
            changes['days_overdue'] = overdue_days
        if row.status == InstallmentStatus.PENDING:
            changes['status'] = InstallmentStatus.OVERDUE
        if self.late_fee_policy and row.status in (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE):
            fee = self.late_fee_policy(row, overdue_days)
            if fee > row.late_fee:
                changes['late_fee'] = fee

        if not changes:
            return row
        return replace(row, **changes)

    def publish_overdue(self, loan_id: str, rows: List[ScheduleInstallment]) -> None:
        for row in rows:
            self.dispatcher.emit(
                LendingEvent.INSTALLMENT_OVERDUE, "loan", loan_id,
                installment_number=row.installment_number, due_date=row.due_date,
                days_overdue=row.days_overdue, late_fee=row.late_fee
            )

    def _load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def _amount(self, value) -> Decimal:
        try:
            amount = to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e), field="amount")
        if not amount.is_finite() or amount <= ZERO:
            raise ValidationError("Payment amount must be positive", field="amount", value=amount)
        if round_amount(amount, self.currency) != amount:
            raise ValidationError(
                f"Payment amount must be in whole {self.currency.code} units", field="amount", value=amount
            )
        return amount

    def _method(self, method) -> PaymentMethod:
        if isinstance(method, PaymentMethod):
            return method
        try:
            return PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {method}", field="method")

    def _transactional(self, operation, description: str):
        return transactional(
            self.storage,
            operation,
            timeout=self.config.storage_timeout_seconds,
            attempts=self.config.max_retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
            description=description,
        )


def publish_status_change(dispatcher: EventDispatcher, previous: LoanStatus, loan: Optional[Loan]) -> None:
    """Emit the status-change events for a loan that moved state"""
    if loan is None or loan.status == previous:
        return
    dispatcher.emit(
        LendingEvent.LOAN_STATUS_CHANGED, "loan", loan.id,
        previous_status=previous.value, status=loan.status.value
    )
    if loan.status == LoanStatus.COMPLETED:
        dispatcher.emit(LendingEvent.LOAN_COMPLETED, "loan", loan.id, client_id=loan.client_id)
    elif loan.status == LoanStatus.DEFAULTED:
        dispatcher.emit(LendingEvent.LOAN_DEFAULTED, "loan", loan.id, client_id=loan.client_id)
