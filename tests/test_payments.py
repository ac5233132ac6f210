"""
Test suite for payment recording

Oldest-first allocation, overpayment rejection, late fees, idempotent replay
and the concurrent payment race.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone
from unittest.mock import Mock

from sfd_lending.config import LendingConfig
from sfd_lending.events import EventDispatcher, LendingEvent
from sfd_lending.exceptions import (
    InvalidTransitionError, NotFoundError, OverpaymentError, ValidationError
)
from sfd_lending.loans import LoanManager
from sfd_lending.models import InstallmentStatus, LoanStatus, PaymentMethod
from sfd_lending.payments import PaymentRecorder, PercentageLateFeePolicy
from sfd_lending.storage import InMemoryStorage, SQLiteStorage


DISBURSED_AT = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
BEFORE_FIRST_DUE = datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)
FIVE_DAYS_LATE = datetime(2024, 2, 20, 10, 0, tzinfo=timezone.utc)


def make_config(**overrides) -> LendingConfig:
    settings = {"database_url": "memory", "retry_backoff_seconds": 0}
    settings.update(overrides)
    return LendingConfig(**settings)


def make_active_loan(manager: LoanManager, amount="3000", months=3, rate="0"):
    """Zero-rate loan whose installments are amount / months each"""
    loan = manager.create_application(
        "client-1", "sfd-1", Decimal(amount), months, Decimal(rate), now=DISBURSED_AT
    )
    manager.approve_loan(loan.id, "officer-1", now=DISBURSED_AT)
    return manager.disburse_loan(loan.id, "officer-1", now=DISBURSED_AT)


class TestApplyPayment:
    """Test allocation of a payment across installments"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.dispatcher = EventDispatcher()
        self.config = make_config()
        self.recorder = PaymentRecorder(self.storage, self.dispatcher, self.config)
        self.manager = LoanManager(
            self.storage, payment_recorder=self.recorder, dispatcher=self.dispatcher, config=self.config
        )
        self.loan = make_active_loan(self.manager)

    def test_oldest_first_allocation(self):
        result = self.recorder.apply_payment(
            self.loan.id, Decimal('2500'), PaymentMethod.MOBILE_MONEY, now=BEFORE_FIRST_DUE
        )

        rows = self.manager.get_schedule(self.loan.id)
        assert [row.status for row in rows] == [
            InstallmentStatus.PAID, InstallmentStatus.PAID, InstallmentStatus.PARTIALLY_PAID
        ]
        assert rows[0].paid_amount == Decimal('1000')
        assert rows[0].paid_at == BEFORE_FIRST_DUE
        assert rows[2].paid_amount == Decimal('500')
        assert [row.installment_number for row in result.updated_installments] == [1, 2, 3]
        assert result.payment.allocations == {1: Decimal('1000'), 2: Decimal('1000'), 3: Decimal('500')}
        assert result.payment.payment_method == PaymentMethod.MOBILE_MONEY

    def test_short_payment_does_not_carry_forward(self):
        result = self.recorder.apply_payment(self.loan.id, Decimal('400'), now=BEFORE_FIRST_DUE)

        rows = self.manager.get_schedule(self.loan.id)
        assert rows[0].status == InstallmentStatus.PARTIALLY_PAID
        assert rows[0].paid_amount == Decimal('400')
        assert rows[1].status == InstallmentStatus.PENDING
        assert len(result.updated_installments) == 1

    def test_partial_then_completing_payment(self):
        self.recorder.apply_payment(self.loan.id, Decimal('400'), now=BEFORE_FIRST_DUE)
        self.recorder.apply_payment(self.loan.id, Decimal('600'), now=BEFORE_FIRST_DUE)

        first = self.manager.get_schedule(self.loan.id)[0]
        assert first.status == InstallmentStatus.PAID
        assert first.paid_amount == Decimal('1000')

    def test_loan_dates_updated(self):
        self.recorder.apply_payment(self.loan.id, Decimal('1000'), now=BEFORE_FIRST_DUE)

        loan = self.manager.get_loan(self.loan.id)
        assert loan.last_payment_date == BEFORE_FIRST_DUE.date()
        assert loan.next_payment_date == self.manager.get_schedule(self.loan.id)[1].due_date

    def test_full_repayment_completes_loan(self):
        completed = Mock()
        self.dispatcher.subscribe(LendingEvent.LOAN_COMPLETED, completed)

        result = self.recorder.apply_payment(self.loan.id, Decimal('3000'), now=BEFORE_FIRST_DUE)

        assert result.loan.status == LoanStatus.COMPLETED
        loan = self.manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.next_payment_date is None
        completed.assert_called_once()

    def test_completed_loan_refuses_payments(self):
        self.recorder.apply_payment(self.loan.id, Decimal('3000'), now=BEFORE_FIRST_DUE)
        with pytest.raises(InvalidTransitionError):
            self.recorder.apply_payment(self.loan.id, Decimal('1'), now=BEFORE_FIRST_DUE)

    def test_overpayment_rejected_before_any_write(self):
        with pytest.raises(OverpaymentError) as exc_info:
            self.recorder.apply_payment(self.loan.id, Decimal('3001'), now=BEFORE_FIRST_DUE)

        error = exc_info.value
        assert error.requested == Decimal('3001')
        assert error.outstanding == Decimal('3000')
        assert error.excess == Decimal('1')
        assert self.recorder.outstanding_balance(self.loan.id) == Decimal('3000')
        assert all(row.status == InstallmentStatus.PENDING for row in self.manager.get_schedule(self.loan.id))
        assert self.manager.get_loan_payments(self.loan.id) == []

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-100'), Decimal('10.5'), "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.recorder.apply_payment(self.loan.id, amount, now=BEFORE_FIRST_DUE)

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            self.recorder.apply_payment(self.loan.id, Decimal('100'), "cheque", now=BEFORE_FIRST_DUE)

    def test_method_accepts_string_value(self):
        result = self.recorder.apply_payment(self.loan.id, Decimal('100'), "bank_transfer", now=BEFORE_FIRST_DUE)
        assert result.payment.payment_method == PaymentMethod.BANK_TRANSFER

    def test_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.recorder.apply_payment("missing", Decimal('100'))

    def test_pending_loan_refuses_payments(self):
        loan = self.manager.create_application("client-2", "sfd-1", Decimal('1000'), 1, Decimal('0'))
        with pytest.raises(InvalidTransitionError):
            self.recorder.apply_payment(loan.id, Decimal('100'))

    def test_payment_event(self):
        handler = Mock()
        self.dispatcher.subscribe(LendingEvent.PAYMENT_RECEIVED, handler)

        self.recorder.apply_payment(self.loan.id, Decimal('1000'), transaction_id="tx-9", now=BEFORE_FIRST_DUE)

        handler.assert_called_once()
        event = handler.call_args[0][0]
        assert event.entity_id == self.loan.id
        assert event.data["transaction_id"] == "tx-9"
        assert event.data["amount"] == "1000"


class TestIdempotency:
    """Test replay of a payment by its transaction reference"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.config = make_config()
        self.manager = LoanManager(self.storage, config=self.config)
        self.recorder = self.manager.payment_recorder
        self.loan = make_active_loan(self.manager)

    def test_replay_returns_prior_result(self):
        first = self.recorder.apply_payment(
            self.loan.id, Decimal('1500'), transaction_id="tx-1", now=BEFORE_FIRST_DUE
        )
        second = self.recorder.apply_payment(
            self.loan.id, Decimal('1500'), transaction_id="tx-1", now=BEFORE_FIRST_DUE
        )

        assert second.replayed is True
        assert second.payment.id == first.payment.id
        assert [row.installment_number for row in second.updated_installments] == [1, 2]
        assert len(self.manager.get_loan_payments(self.loan.id)) == 1
        rows = self.manager.get_schedule(self.loan.id)
        assert rows[1].paid_amount == Decimal('500')
        assert rows[2].status == InstallmentStatus.PENDING

    def test_reference_reused_for_other_loan(self):
        other = make_active_loan(self.manager)
        self.recorder.apply_payment(self.loan.id, Decimal('100'), transaction_id="tx-1", now=BEFORE_FIRST_DUE)

        with pytest.raises(ValidationError):
            self.recorder.apply_payment(other.id, Decimal('100'), transaction_id="tx-1", now=BEFORE_FIRST_DUE)

    def test_generated_reference_when_missing(self):
        first = self.recorder.apply_payment(self.loan.id, Decimal('100'), now=BEFORE_FIRST_DUE)
        second = self.recorder.apply_payment(self.loan.id, Decimal('100'), now=BEFORE_FIRST_DUE)

        assert first.payment.transaction_id != second.payment.transaction_id
        assert len(self.manager.get_loan_payments(self.loan.id)) == 2


class TestLateFees:
    """Test overdue refresh and late-fee settlement"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.dispatcher = EventDispatcher()
        self.config = make_config(late_fee_rate=Decimal('0.05'))
        self.manager = LoanManager(self.storage, dispatcher=self.dispatcher, config=self.config)
        self.recorder = self.manager.payment_recorder
        self.loan = make_active_loan(self.manager)

    def test_refresh_marks_overdue_and_charges_fee(self):
        rows = self.recorder.refresh_late_fees(self.loan.id, now=FIVE_DAYS_LATE)

        assert rows[0].status == InstallmentStatus.OVERDUE
        assert rows[0].days_overdue == 5
        assert rows[0].late_fee == Decimal('50')
        assert rows[1].status == InstallmentStatus.PENDING
        assert rows[1].late_fee == Decimal('0')
        assert self.recorder.outstanding_balance(self.loan.id) == Decimal('3050')

    def test_refresh_is_repeatable(self):
        handler = Mock()
        self.dispatcher.subscribe(LendingEvent.INSTALLMENT_OVERDUE, handler)

        self.recorder.refresh_late_fees(self.loan.id, now=FIVE_DAYS_LATE)
        rows = self.recorder.refresh_late_fees(self.loan.id, now=FIVE_DAYS_LATE)

        assert rows[0].late_fee == Decimal('50')
        handler.assert_called_once()

    def test_payment_settles_late_fee_first(self):
        self.recorder.apply_payment(self.loan.id, Decimal('1050'), now=FIVE_DAYS_LATE)

        rows = self.manager.get_schedule(self.loan.id)
        assert rows[0].status == InstallmentStatus.PAID
        assert rows[0].paid_amount == Decimal('1050')
        assert rows[1].status == InstallmentStatus.PENDING
        assert self.manager.get_loan(self.loan.id).status == LoanStatus.ACTIVE

    def test_short_payment_on_overdue_installment(self):
        self.recorder.apply_payment(self.loan.id, Decimal('500'), now=FIVE_DAYS_LATE)

        row = self.manager.get_schedule(self.loan.id)[0]
        assert row.status == InstallmentStatus.PARTIALLY_PAID
        assert row.amount_due == Decimal('550')
        assert self.manager.get_loan(self.loan.id).status == LoanStatus.LATE

    def test_overpayment_counts_late_fees(self):
        with pytest.raises(OverpaymentError) as exc_info:
            self.recorder.apply_payment(self.loan.id, Decimal('3051'), now=FIVE_DAYS_LATE)
        assert exc_info.value.outstanding == Decimal('3050')

        self.recorder.apply_payment(self.loan.id, Decimal('3050'), now=FIVE_DAYS_LATE)
        assert self.manager.get_loan(self.loan.id).status == LoanStatus.COMPLETED

    def test_grace_period(self):
        recorder = PaymentRecorder(
            self.storage, config=self.config, late_fee_policy=PercentageLateFeePolicy(Decimal('0.05'), 10)
        )
        rows = recorder.refresh_late_fees(self.loan.id, now=FIVE_DAYS_LATE)

        assert rows[0].status == InstallmentStatus.OVERDUE
        assert rows[0].late_fee == Decimal('0')

    def test_no_policy_no_fees(self):
        recorder = PaymentRecorder(self.storage, config=make_config())
        rows = recorder.refresh_late_fees(self.loan.id, now=FIVE_DAYS_LATE)

        assert rows[0].status == InstallmentStatus.OVERDUE
        assert rows[0].late_fee == Decimal('0')

    def test_custom_policy_hook(self):
        def flat_fee(installment, overdue_days):
            return Decimal('100') if overdue_days > 0 else Decimal('0')

        recorder = PaymentRecorder(self.storage, config=self.config, late_fee_policy=flat_fee)
        rows = recorder.refresh_late_fees(self.loan.id, now=FIVE_DAYS_LATE)

        assert rows[0].late_fee == Decimal('100')


class TestConcurrentPayments:
    """Simultaneous payments against the same loan"""

    def _race(self, manager, loan_id, amounts):
        barrier = threading.Barrier(len(amounts))
        outcomes = []
        lock = threading.Lock()

        def pay(reference, amount):
            barrier.wait()
            try:
                manager.payment_recorder.apply_payment(
                    loan_id, Decimal(amount), transaction_id=reference, now=BEFORE_FIRST_DUE
                )
                result = "applied"
            except OverpaymentError:
                result = "overpayment"
            with lock:
                outcomes.append(result)

        threads = [
            threading.Thread(target=pay, args=(f"tx-{n}", amount)) for n, amount in enumerate(amounts)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return sorted(outcomes)

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_exactly_one_payment_applies(self, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(":memory:")
        manager = LoanManager(storage, config=make_config())
        loan = make_active_loan(manager)

        outcomes = self._race(manager, loan.id, ["2000", "2000"])

        assert outcomes == ["applied", "overpayment"]
        rows = manager.get_schedule(loan.id)
        assert [row.status for row in rows] == [
            InstallmentStatus.PAID, InstallmentStatus.PAID, InstallmentStatus.PENDING
        ]
        assert sum(row.paid_amount for row in rows) == Decimal('2000')
        assert len(manager.get_loan_payments(loan.id)) == 1
        storage.close()

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_installment_never_paid_twice(self, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(":memory:")
        manager = LoanManager(storage, config=make_config())
        loan = make_active_loan(manager)

        outcomes = self._race(manager, loan.id, ["1000", "1000"])

        assert outcomes == ["applied", "applied"]
        rows = manager.get_schedule(loan.id)
        assert [row.paid_amount for row in rows] == [Decimal('1000'), Decimal('1000'), Decimal('0')]
        assert rows[2].status == InstallmentStatus.PENDING
        storage.close()
