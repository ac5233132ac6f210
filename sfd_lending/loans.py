"""
Loan Lifecycle Module

Manages SFD loans from application through approval, disbursement and
repayment. Disbursement consumes subsidy funds and materializes the repayment
schedule in the same storage transaction as the status change, so a loan is
never left disbursed without a schedule or without its subsidy recorded.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import replace
from typing import Dict, List, Optional, Tuple
import logging
import uuid

from .aggregation import ScheduleSummary, summarize_schedule
from .amortization import calculate_monthly_payment, compute_schedule
from .config import LendingConfig, get_config
from .currency import currency_from_code, to_decimal
from .events import EventDispatcher, LendingEvent
from .exceptions import InsufficientFundsError, NotFoundError, ValidationError
from .logging_config import log_action
from .models import (
    GrantStatus, InstallmentStatus, Loan, LoanPayment, LoanStatus, ScheduleInstallment, SubsidyGrant,
    SubsidyUsage
)
from .payments import PaymentRecorder, publish_status_change
from .status import (
    REPAYING_STATUSES, activate, apply_derived_status, approve, ensure_transition, mark_disbursed, reject
)
from .storage import StorageInterface, transactional
from .subsidies import SubsidyLedger


ZERO = Decimal('0')


class LoanManager:
    """
    Manages loan lifecycle from application through completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        subsidy_ledger: Optional[SubsidyLedger] = None,
        payment_recorder: Optional[PaymentRecorder] = None,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.dispatcher = dispatcher or EventDispatcher()
        self.subsidy_ledger = subsidy_ledger or SubsidyLedger(storage, self.dispatcher, self.config)
        self.payment_recorder = payment_recorder or PaymentRecorder(storage, self.dispatcher, self.config)
        self.currency = currency_from_code(self.config.currency)
        self.logger = logging.getLogger("sfd_lending.loans")

        self.loans_table = "loans"
        self.installments_table = "schedule_installments"
        self.payments_table = "loan_payments"

    def create_application(
        self,
        client_id: str,
        sfd_id: str,
        amount,
        duration_months: int,
        interest_rate,
        purpose: str = "",
        subsidy_amount=ZERO,
        subsidy_rate=ZERO,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Record a new loan application

        Args:
            client_id: Borrowing client
            sfd_id: Lending SFD
            amount: Requested principal
            duration_months: Number of monthly installments
            interest_rate: Annual interest rate in percent
            purpose: Free-text purpose of the loan
            subsidy_amount: Part of the loan funded by a MEREF subsidy
            subsidy_rate: Subsidy rate in percent, informational

        Returns:
            Pending Loan
        """
        if not client_id or not sfd_id:
            raise ValidationError("client_id and sfd_id are required", field="client_id")
        if isinstance(duration_months, bool) or not isinstance(duration_months, int):
            raise ValidationError("duration_months must be an integer", field="duration_months")
        now = now or datetime.now(timezone.utc)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            sfd_id=sfd_id,
            amount=self._decimal(amount, "amount"),
            duration_months=duration_months,
            interest_rate=self._decimal(interest_rate, "interest_rate"),
            purpose=purpose or "",
            subsidy_amount=self._decimal(subsidy_amount, "subsidy_amount"),
            subsidy_rate=self._decimal(subsidy_rate, "subsidy_rate"),
        )
        if loan.subsidy_amount > loan.amount:
            raise ValidationError(
                "Subsidy amount cannot exceed the loan amount",
                field="subsidy_amount", value=loan.subsidy_amount
            )

        loan = self._transactional(lambda: self._save_loan(loan, 0), "create_application")

        log_action(
            self.logger, "info", "Loan application created",
            user_id=client_id, action="loan.create", resource=loan.id,
            extra={"sfd_id": sfd_id, "amount": loan.amount, "duration_months": duration_months}
        )
        self.dispatcher.emit(
            LendingEvent.LOAN_CREATED, "loan", loan.id,
            client_id=client_id, sfd_id=sfd_id, amount=loan.amount
        )
        return loan

    def approve_loan(self, loan_id: str, actor_id: str, now: Optional[datetime] = None) -> Loan:
        """Approve a pending loan and fix its monthly payment"""
        def operation() -> Loan:
            loan = self.get_loan(loan_id)
            payment = calculate_monthly_payment(
                loan.amount, loan.interest_rate, loan.duration_months, self.currency
            )
            return self._save_loan(approve(loan, actor_id, payment, now), loan.version)

        loan = self._transactional(operation, "approve_loan")
        log_action(
            self.logger, "info", "Loan approved",
            user_id=actor_id, action="loan.approve", resource=loan_id,
            extra={"monthly_payment": loan.monthly_payment}
        )
        self.dispatcher.emit(
            LendingEvent.LOAN_APPROVED, "loan", loan_id,
            approved_by=actor_id, monthly_payment=loan.monthly_payment, client_id=loan.client_id
        )
        return loan

    def reject_loan(
        self,
        loan_id: str,
        actor_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """Reject a loan that has not been disbursed"""
        def operation() -> Loan:
            loan = self.get_loan(loan_id)
            return self._save_loan(reject(loan, actor_id, notes, now), loan.version)

        loan = self._transactional(operation, "reject_loan")
        log_action(
            self.logger, "info", "Loan rejected",
            user_id=actor_id, action="loan.reject", resource=loan_id,
            extra={"notes": notes}
        )
        self.dispatcher.emit(
            LendingEvent.LOAN_REJECTED, "loan", loan_id,
            rejected_by=actor_id, notes=notes, client_id=loan.client_id
        )
        return loan

    def disburse_loan(
        self,
        loan_id: str,
        actor_id: str,
        subsidy_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Disburse an approved loan

        When the loan carries a subsidy, the funds check and usage entry are
        made against the given grant, or the SFD's oldest active grant able to
        cover it. The schedule starts at the disbursement date and the loan
        moves through disbursed to active. Any failure leaves no trace.

        Raises:
            InvalidTransitionError: Loan is not approved
            InsufficientFundsError: No grant can cover the subsidy
            GrantInactiveError: Given grant is revoked or expired
            ValidationError: Given grant belongs to another SFD
        """
        now = now or datetime.now(timezone.utc)

        def operation() -> Tuple[Loan, Optional[Tuple[SubsidyUsage, SubsidyGrant, bool]]]:
            loan = self.get_loan(loan_id)
            ensure_transition(loan, LoanStatus.DISBURSED)
            usage = None

            if loan.subsidy_amount > ZERO:
                grant_id = subsidy_id or self._pick_grant(loan, now.date())
                usage = self.subsidy_ledger.record_usage_in_transaction(
                    grant_id, loan.id, loan.subsidy_amount,
                    notes=f"Disbursement of loan {loan.id}", now=now, sfd_id=loan.sfd_id
                )
                loan = replace(loan, subsidy_id=grant_id)

            disbursed = mark_disbursed(loan, actor_id, now)
            rows = self._materialize_schedule(disbursed, now.date(), now)
            active = activate(disbursed, rows[0].due_date if rows else None, now)
            return self._save_loan(active, loan.version), usage

        loan, usage = self._transactional(operation, "disburse_loan")

        log_action(
            self.logger, "info", "Loan disbursed",
            user_id=actor_id, action="loan.disburse", resource=loan_id,
            extra={"amount": loan.amount, "subsidy_id": loan.subsidy_id, "subsidy_amount": loan.subsidy_amount}
        )
        if usage:
            self.subsidy_ledger.publish_usage(*usage)
        self.dispatcher.emit(
            LendingEvent.LOAN_DISBURSED, "loan", loan_id,
            disbursed_by=actor_id, amount=loan.amount, client_id=loan.client_id
        )
        self.dispatcher.emit(
            LendingEvent.SCHEDULE_GENERATED, "loan", loan_id,
            installments=loan.duration_months, first_due=loan.next_payment_date
        )
        self.dispatcher.emit(
            LendingEvent.LOAN_STATUS_CHANGED, "loan", loan_id,
            previous_status=LoanStatus.APPROVED.value, status=loan.status.value
        )
        return loan

    def generate_schedule(self, loan_id: str, now: Optional[datetime] = None) -> List[ScheduleInstallment]:
        """
        Materialize a disbursed loan's schedule

        Idempotent: when rows already exist they are returned unchanged.
        """
        now = now or datetime.now(timezone.utc)

        def operation() -> List[ScheduleInstallment]:
            loan = self.get_loan(loan_id)
            existing = self.get_schedule(loan_id)
            if existing:
                return existing
            if loan.status not in REPAYING_STATUSES and loan.status != LoanStatus.DISBURSED:
                raise ValidationError(
                    f"Cannot generate a schedule for a {loan.status.value} loan",
                    field="status", loan_id=loan_id
                )
            start = loan.disbursed_at.date() if loan.disbursed_at else now.date()
            return self._materialize_schedule(loan, start, now)

        return self._transactional(operation, "generate_schedule")

    def _materialize_schedule(self, loan: Loan, start_date: date, now: datetime) -> List[ScheduleInstallment]:
        """Persist schedule rows 1..N; must run inside the storage transaction"""
        if self.storage.find(self.installments_table, {"loan_id": loan.id}):
            return self.get_schedule(loan.id)

        result = compute_schedule(
            loan.amount, loan.interest_rate, loan.duration_months, start_date, self.currency
        )
        rows = []
        for entry in result.schedule:
            row = ScheduleInstallment(
                id=f"{loan.id}_{entry.installment_number}",
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                principal_amount=entry.principal_amount,
                interest_amount=entry.interest_amount,
                total_amount=entry.total_amount,
                remaining_principal=entry.remaining_principal,
            )
            version = self.storage.save_versioned(self.installments_table, row.id, row.to_dict(), 0)
            rows.append(replace(row, version=version))

        self.logger.info(f"Generated {len(rows)} installments for loan {loan.id}")
        return rows

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID; raises NotFoundError if it does not exist"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def get_schedule(self, loan_id: str) -> List[ScheduleInstallment]:
        """Schedule rows ordered by installment number"""
        return self.payment_recorder.get_installments(loan_id)

    def get_schedule_summary(self, loan_id: str) -> ScheduleSummary:
        """Dashboard summary of a loan's schedule"""
        self.get_loan(loan_id)
        return summarize_schedule(self.get_schedule(loan_id))

    def list_client_loans(self, client_id: str) -> List[Loan]:
        """Loans of a client, newest first"""
        return self._list_loans({"client_id": client_id})

    def list_sfd_loans(self, sfd_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Loans granted by an SFD, newest first"""
        filters = {"sfd_id": sfd_id}
        if status:
            filters["status"] = status.value
        return self._list_loans(filters)

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        """Get payment history for loan"""
        payments = [
            LoanPayment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda payment: payment.payment_date)
        return payments

    def refresh_loan_status(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """
        Re-derive a repaying loan's status from its schedule

        Refreshes late fees first, then persists active/late/defaulted/
        completed when it changed.
        """
        now = now or datetime.now(timezone.utc)
        loan, previous, newly_overdue = self._transactional(
            lambda: self._refresh(loan_id, now), "refresh_loan_status"
        )
        self.payment_recorder.publish_overdue(loan_id, newly_overdue)
        if loan.status != previous:
            log_action(
                self.logger, "info", "Loan status refreshed",
                action="loan.refresh_status", resource=loan_id,
                extra={"previous_status": previous.value, "status": loan.status.value}
            )
            publish_status_change(self.dispatcher, previous, loan)
        return loan

    def _refresh(self, loan_id: str, now: datetime) -> Tuple[Loan, LoanStatus, List[ScheduleInstallment]]:
        loan = self.get_loan(loan_id)
        if loan.status not in REPAYING_STATUSES and loan.status != LoanStatus.DISBURSED:
            return loan, loan.status, []
        rows, newly_overdue = self.payment_recorder.refresh_in_transaction(loan_id, now)
        updated = apply_derived_status(loan, rows, now.date(), self.config.default_threshold_days, now)
        if updated is not loan:
            updated = self._save_loan(updated, loan.version)
        return updated, loan.status, newly_overdue

    def process_overdue_loans(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Sweep repaying loans: refresh late fees and statuses

        A loan that fails to refresh is logged and skipped so one bad row does
        not stop the sweep.

        Returns:
            Counts of loans processed, late, defaulted, completed and failed
        """
        now = now or datetime.now(timezone.utc)
        results = {"loans_processed": 0, "late": 0, "defaulted": 0, "completed": 0, "failed": 0}

        loan_ids = []
        for status in sorted(REPAYING_STATUSES, key=lambda s: s.value):
            loan_ids.extend(data['id'] for data in self.storage.find(self.loans_table, {"status": status.value}))

        for loan_id in loan_ids:
            try:
                loan = self.refresh_loan_status(loan_id, now)
            except (NotFoundError, ValidationError) as e:
                self.logger.error(f"Overdue processing failed for loan {loan_id}: {e}")
                results["failed"] += 1
                continue
            results["loans_processed"] += 1
            if loan.status == LoanStatus.LATE:
                results["late"] += 1
            elif loan.status == LoanStatus.DEFAULTED:
                results["defaulted"] += 1
            elif loan.status == LoanStatus.COMPLETED:
                results["completed"] += 1

        self.logger.info(f"Overdue sweep finished: {results}")
        return results

    def upcoming_installments(self, within_days: int, now: Optional[datetime] = None) -> List[ScheduleInstallment]:
        """Unpaid installments of repaying loans falling due within the window"""
        if within_days < 0:
            raise ValidationError("within_days cannot be negative", field="within_days")
        today = (now or datetime.now(timezone.utc)).date()
        horizon = today + timedelta(days=within_days)

        upcoming = []
        for status in REPAYING_STATUSES:
            for data in self.storage.find(self.loans_table, {"status": status.value}):
                for row in self.get_schedule(data['id']):
                    if row.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIALLY_PAID) \
                            and today <= row.due_date <= horizon:
                        upcoming.append(row)
        upcoming.sort(key=lambda row: (row.due_date, row.loan_id, row.installment_number))
        return upcoming

    def _pick_grant(self, loan: Loan, today: date) -> str:
        grant = self.subsidy_ledger.find_available_grant(loan.sfd_id, loan.subsidy_amount, today)
        if grant is None:
            available = max(
                (g.remaining_amount for g in self.subsidy_ledger.list_grants(loan.sfd_id)
                 if g.status == GrantStatus.ACTIVE and not g.is_expired(today)),
                default=ZERO
            )
            self.logger.warning(
                f"No subsidy grant of SFD {loan.sfd_id} covers {loan.subsidy_amount} for loan {loan.id}"
            )
            raise InsufficientFundsError(available, loan.subsidy_amount)
        return grant.id

    def _list_loans(self, filters: Dict[str, str]) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def _save_loan(self, loan: Loan, expected_version: int) -> Loan:
        version = self.storage.save_versioned(self.loans_table, loan.id, loan.to_dict(), expected_version)
        return replace(loan, version=version)

    def _decimal(self, value, field_name: str) -> Decimal:
        try:
            result = to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e), field=field_name)
        if not result.is_finite():
            raise ValidationError(f"{field_name} must be finite", field=field_name)
        return result

    def _transactional(self, operation, description: str):
        return transactional(
            self.storage,
            operation,
            timeout=self.config.storage_timeout_seconds,
            attempts=self.config.max_retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
            description=description,
        )
