"""
Subsidy Ledger Module

Tracks subsidy grants allocated by MEREF to SFDs and their consumption by
loans. A grant's used_amount and its append-only usage ledger are always
written in the same transaction, after the available-funds check made inside
that transaction, so two disbursements can never both spend the same balance.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import replace
from typing import List, Optional, Tuple
import logging
import uuid

from .config import LendingConfig, get_config
from .currency import Money, currency_from_code, to_decimal, total
from .events import EventDispatcher, LendingEvent
from .exceptions import (
    GrantInactiveError, InsufficientFundsError, NotFoundError, ValidationError
)
from .logging_config import log_action
from .models import GrantStatus, SubsidyGrant, SubsidyUsage
from .storage import StorageInterface, transactional


ZERO = Decimal('0')


class SubsidyLedger:
    """
    Allocation, consumption and remaining balance of subsidy grants
    """

    def __init__(
        self,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.currency = currency_from_code(self.config.currency)
        self.logger = logging.getLogger("sfd_lending.subsidies")

        self.grants_table = "subsidy_grants"
        self.usage_table = "subsidy_usage"

    def allocate_grant(
        self,
        sfd_id: str,
        amount,
        actor_id: str,
        end_date: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> SubsidyGrant:
        """
        Allocate a new subsidy grant to an SFD

        Args:
            sfd_id: Receiving SFD
            amount: Granted amount, must be positive
            actor_id: MEREF user allocating the grant
            end_date: Last day the grant may be used (optional)

        Returns:
            Created SubsidyGrant
        """
        if not actor_id:
            raise ValidationError("An allocating actor is required", field="allocated_by")
        now = now or datetime.now(timezone.utc)
        grant = SubsidyGrant(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sfd_id=sfd_id,
            amount=self._amount(amount),
            allocated_by=actor_id,
            allocated_at=now,
            end_date=end_date,
        )

        def operation() -> SubsidyGrant:
            version = self.storage.save_versioned(self.grants_table, grant.id, grant.to_dict(), 0)
            return replace(grant, version=version)

        grant = self._transactional(operation, "allocate_grant")

        log_action(
            self.logger, "info", "Subsidy grant allocated",
            user_id=actor_id, action="subsidy.allocate", resource=grant.id,
            extra={"sfd_id": sfd_id, "amount": grant.amount}
        )
        self.dispatcher.emit(
            LendingEvent.SUBSIDY_ALLOCATED, "subsidy", grant.id,
            sfd_id=sfd_id, amount=grant.amount, allocated_by=actor_id
        )
        return grant

    def get_grant(self, subsidy_id: str) -> SubsidyGrant:
        """Load a grant; raises NotFoundError if it does not exist"""
        data = self.storage.load(self.grants_table, subsidy_id)
        if not data:
            raise NotFoundError("subsidy", subsidy_id)
        return SubsidyGrant.from_dict(data)

    def list_grants(self, sfd_id: str, status: Optional[GrantStatus] = None) -> List[SubsidyGrant]:
        """Grants of an SFD, oldest allocation first"""
        filters = {"sfd_id": sfd_id}
        if status:
            filters["status"] = status.value
        grants = [SubsidyGrant.from_dict(data) for data in self.storage.find(self.grants_table, filters)]
        grants.sort(key=lambda grant: (grant.allocated_at or grant.created_at, grant.id))
        return grants

    def list_usage(self, subsidy_id: str) -> List[SubsidyUsage]:
        """Usage ledger of a grant, oldest entry first"""
        entries = [
            SubsidyUsage.from_dict(data)
            for data in self.storage.find(self.usage_table, {"subsidy_id": subsidy_id})
        ]
        entries.sort(key=lambda entry: (entry.used_at, entry.id))
        return entries

    def has_available_funds(self, subsidy_id: str, required_amount, today: Optional[date] = None) -> bool:
        """
        Whether a grant can cover an amount right now

        Revoked or expired grants have no available funds.

        Raises:
            NotFoundError: If the grant does not exist
        """
        required = self._amount(required_amount, allow_zero=True)
        grant = self.get_grant(subsidy_id)
        if not self._is_usable(grant, today or date.today()):
            return False
        return grant.remaining_amount >= required

    def find_available_grant(self, sfd_id: str, amount, today: Optional[date] = None) -> Optional[SubsidyGrant]:
        """Oldest active grant of an SFD able to cover the amount, if any"""
        required = self._amount(amount)
        today = today or date.today()
        for grant in self.list_grants(sfd_id, GrantStatus.ACTIVE):
            if self._is_usable(grant, today) and grant.remaining_amount >= required:
                return grant
        return None

    def record_usage(
        self,
        subsidy_id: str,
        loan_id: str,
        amount,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SubsidyUsage:
        """
        Consume part of a grant for a loan

        The funds check, the ledger insert and the used_amount increment run
        in one transaction; nothing is written when any step fails.

        Raises:
            NotFoundError: Unknown grant
            GrantInactiveError: Grant revoked or expired
            InsufficientFundsError: Remaining balance below amount
        """
        usage, grant, crossed_threshold = self._transactional(
            lambda: self.record_usage_in_transaction(subsidy_id, loan_id, amount, notes, now),
            "record_usage",
        )
        self.publish_usage(usage, grant, crossed_threshold)
        return usage

    def record_usage_in_transaction(
        self,
        subsidy_id: str,
        loan_id: str,
        amount,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        sfd_id: Optional[str] = None
    ) -> Tuple[SubsidyUsage, SubsidyGrant, bool]:
        """
        Usage recording for callers that already hold the storage transaction
        (loan disbursement). Returns the usage entry, the updated grant and
        whether the low-balance threshold was crossed. Events are left to the
        caller to publish once its transaction has committed.

        When sfd_id is given the grant must belong to that SFD, otherwise
        ValidationError is raised before anything is written.
        """
        requested = self._amount(amount)
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            grant = self.get_grant(subsidy_id)
            if sfd_id is not None and grant.sfd_id != sfd_id:
                raise ValidationError(
                    f"Subsidy {subsidy_id} belongs to SFD {grant.sfd_id}, not {sfd_id}",
                    field="subsidy_id", value=subsidy_id
                )
            self._ensure_usable(grant, requested, now.date())

            usage = SubsidyUsage(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                subsidy_id=subsidy_id,
                loan_id=loan_id,
                amount=requested,
                used_at=now,
                notes=notes,
            )
            self.storage.save_versioned(self.usage_table, usage.id, usage.to_dict(), 0)

            updated = replace(grant, used_amount=grant.used_amount + requested, updated_at=now)
            crossed_threshold = (
                not grant.low_balance_notified
                and updated.remaining_amount < self.config.subsidy_low_balance_ratio * grant.amount
            )
            if crossed_threshold:
                updated = replace(updated, low_balance_notified=True)
            version = self.storage.save_versioned(
                self.grants_table, grant.id, updated.to_dict(), grant.version
            )
            updated = replace(updated, version=version)

        log_action(
            self.logger, "info", "Subsidy usage recorded",
            action="subsidy.use", resource=subsidy_id,
            extra={"loan_id": loan_id, "amount": requested, "remaining": updated.remaining_amount}
        )
        return replace(usage, version=1), updated, crossed_threshold

    def publish_usage(self, usage: SubsidyUsage, grant: SubsidyGrant, crossed_threshold: bool) -> None:
        """Emit the events for a committed usage entry"""
        self.dispatcher.emit(
            LendingEvent.SUBSIDY_USED, "subsidy", grant.id,
            loan_id=usage.loan_id, amount=usage.amount, remaining=grant.remaining_amount
        )
        if crossed_threshold:
            self.logger.warning(
                f"Subsidy {grant.id} of SFD {grant.sfd_id} is running low: "
                f"{Money(grant.remaining_amount, self.currency).to_string()} left of "
                f"{Money(grant.amount, self.currency).to_string()}"
            )
            self.dispatcher.emit(
                LendingEvent.SUBSIDY_LOW_BALANCE, "subsidy", grant.id,
                sfd_id=grant.sfd_id, remaining=grant.remaining_amount, amount=grant.amount
            )

    def revoke_grant(self, subsidy_id: str, actor_id: str, now: Optional[datetime] = None) -> SubsidyGrant:
        """
        Revoke an active grant

        Runs in the same exclusive boundary as usage recording, so it is
        ordered strictly before or after any in-flight usage. Usage already
        recorded stays on the ledger; later usage is refused.
        """
        if not actor_id:
            raise ValidationError("A revoking actor is required", field="revoked_by")
        now = now or datetime.now(timezone.utc)

        def operation() -> SubsidyGrant:
            grant = self.get_grant(subsidy_id)
            if grant.status != GrantStatus.ACTIVE:
                raise GrantInactiveError(subsidy_id, grant.status.value)
            updated = replace(
                grant, status=GrantStatus.REVOKED, revoked_at=now, revoked_by=actor_id, updated_at=now
            )
            version = self.storage.save_versioned(
                self.grants_table, grant.id, updated.to_dict(), grant.version
            )
            return replace(updated, version=version)

        grant = self._transactional(operation, "revoke_grant")
        log_action(
            self.logger, "info", "Subsidy grant revoked",
            user_id=actor_id, action="subsidy.revoke", resource=subsidy_id,
            extra={"used_amount": grant.used_amount, "amount": grant.amount}
        )
        self.dispatcher.emit(
            LendingEvent.SUBSIDY_REVOKED, "subsidy", subsidy_id,
            revoked_by=actor_id, used_amount=grant.used_amount
        )
        return grant

    def expire_grants(self, now: Optional[datetime] = None) -> List[SubsidyGrant]:
        """Mark active grants whose end_date has passed as expired"""
        now = now or datetime.now(timezone.utc)
        today = now.date()

        def operation() -> List[SubsidyGrant]:
            expired = []
            for data in self.storage.find(self.grants_table, {"status": GrantStatus.ACTIVE.value}):
                grant = SubsidyGrant.from_dict(data)
                if not grant.is_expired(today):
                    continue
                updated = replace(grant, status=GrantStatus.EXPIRED, updated_at=now)
                version = self.storage.save_versioned(
                    self.grants_table, grant.id, updated.to_dict(), grant.version
                )
                expired.append(replace(updated, version=version))
            return expired

        expired = self._transactional(operation, "expire_grants")
        for grant in expired:
            self.logger.info(f"Subsidy grant {grant.id} expired (end date {grant.end_date})")
            self.dispatcher.emit(
                LendingEvent.SUBSIDY_EXPIRED, "subsidy", grant.id,
                end_date=grant.end_date, remaining=grant.remaining_amount
            )
        return expired

    def verify_ledger(self, subsidy_id: str) -> bool:
        """Check that the usage ledger sums to the grant's used_amount"""
        grant = self.get_grant(subsidy_id)
        usage_total = total((entry.amount for entry in self.list_usage(subsidy_id)), self.currency)
        if usage_total.amount != grant.used_amount:
            self.logger.error(
                f"Subsidy ledger mismatch for {subsidy_id}: usage total {usage_total.to_string()}, "
                f"used_amount {Money(grant.used_amount, self.currency).to_string()}"
            )
            return False
        return True

    def _is_usable(self, grant: SubsidyGrant, today: date) -> bool:
        return grant.status == GrantStatus.ACTIVE and not grant.is_expired(today)

    def _ensure_usable(self, grant: SubsidyGrant, requested: Decimal, today: date) -> None:
        if grant.status != GrantStatus.ACTIVE:
            raise GrantInactiveError(grant.id, grant.status.value)
        if grant.is_expired(today):
            raise GrantInactiveError(grant.id, GrantStatus.EXPIRED.value)
        if grant.remaining_amount < requested:
            self.logger.warning(
                f"Insufficient funds on subsidy {grant.id}: available {grant.remaining_amount}, requested {requested}"
            )
            raise InsufficientFundsError(grant.remaining_amount, requested, grant.id)

    def _amount(self, value, allow_zero: bool = False) -> Decimal:
        try:
            amount = to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e), field="amount")
        if not amount.is_finite() or amount < ZERO or (amount == ZERO and not allow_zero):
            raise ValidationError("Amount must be positive", field="amount", value=amount)
        return amount

    def _transactional(self, operation, description: str):
        return transactional(
            self.storage,
            operation,
            timeout=self.config.storage_timeout_seconds,
            attempts=self.config.max_retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
            description=description,
        )
