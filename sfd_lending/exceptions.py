"""
Error Taxonomy Module

Typed errors raised by the lending core. Business-rule errors carry the
structured details (amounts, statuses) a client needs to render a precise
message; transient errors are the only ones that may be retried.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, TypeVar


logger = logging.getLogger("sfd_lending.retry")

T = TypeVar("T")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


class LendingError(Exception):
    """Base exception for all lending core errors."""

    code = "lending_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for API responses"""
        result = {"error": self.code, "message": self.message}
        for key, value in self.details.items():
            result[key] = _jsonable(value)
        return result


class ValidationError(LendingError):
    """Raised when input has a bad shape or is out of range. Never retried."""

    code = "validation_error"


class NotFoundError(LendingError):
    """Raised when a loan, grant or installment row does not exist."""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class InsufficientFundsError(LendingError):
    """Raised when a subsidy grant cannot cover a requested amount."""

    code = "insufficient_funds"

    def __init__(self, available: Decimal, requested: Decimal, subsidy_id: Optional[str] = None):
        super().__init__(
            f"Insufficient subsidy funds: available {available}, requested {requested}",
            available=available,
            requested=requested,
            subsidy_id=subsidy_id,
        )
        self.available = available
        self.requested = requested
        self.subsidy_id = subsidy_id


class InvalidTransitionError(LendingError):
    """Raised when a loan status change is not allowed."""

    code = "invalid_transition"

    def __init__(self, current_status: str, target_status: str, reason: Optional[str] = None):
        message = f"Cannot move loan from {current_status} to {target_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            current_status=current_status,
            target_status=target_status,
        )
        self.current_status = current_status
        self.target_status = target_status


class GrantInactiveError(LendingError):
    """Raised when a revoked or expired subsidy grant is used."""

    code = "grant_inactive"

    def __init__(self, subsidy_id: str, status: str):
        super().__init__(
            f"Subsidy {subsidy_id} is {status}",
            subsidy_id=subsidy_id,
            status=status,
        )
        self.subsidy_id = subsidy_id
        self.status = status


class OverpaymentError(LendingError):
    """Raised when a payment exceeds the loan's total outstanding balance."""

    code = "overpayment"

    def __init__(self, loan_id: str, requested: Decimal, outstanding: Decimal):
        excess = requested - outstanding
        super().__init__(
            f"Payment of {requested} exceeds outstanding balance {outstanding} on loan {loan_id}",
            loan_id=loan_id,
            requested=requested,
            outstanding=outstanding,
            excess=excess,
        )
        self.loan_id = loan_id
        self.requested = requested
        self.outstanding = outstanding
        self.excess = excess


class TransientError(LendingError):
    """Base for errors that may succeed when retried."""

    code = "transient_error"


class ConcurrentModificationError(TransientError):
    """Raised when a versioned row changed between read and write."""

    code = "concurrent_modification"

    def __init__(self, table: str, record_id: str, attempts: int = 1):
        super().__init__(
            f"Record {record_id} in {table} was modified concurrently",
            table=table,
            record_id=record_id,
            attempts=attempts,
        )
        self.table = table
        self.record_id = record_id
        self.attempts = attempts


class StorageTimeoutError(TransientError):
    """Raised when the storage transaction boundary cannot be entered in time."""

    code = "storage_timeout"

    def __init__(self, timeout: float):
        super().__init__(
            f"Storage transaction not acquired within {timeout}s",
            timeout=timeout,
        )
        self.timeout = timeout


def retry_transient(
    operation: Callable[[], T],
    attempts: int = 3,
    backoff_seconds: float = 0.0,
    description: str = "operation"
) -> T:
    """
    Run an operation, retrying it on TransientError

    Args:
        operation: Zero-argument callable performing one full read-modify-write
        attempts: Maximum number of attempts (at least 1)
        backoff_seconds: Base delay, doubled after each failed attempt
        description: Used in log messages

    Returns:
        The operation's return value

    Raises:
        The last TransientError once attempts are exhausted. A final
        ConcurrentModificationError reports the number of attempts made.
    """
    attempts = max(1, attempts)
    delay = backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientError as e:
            if attempt == attempts:
                if isinstance(e, ConcurrentModificationError):
                    raise ConcurrentModificationError(e.table, e.record_id, attempts) from e
                raise
            logger.warning(
                f"{description} failed with {e.code} (attempt {attempt}/{attempts}), retrying"
            )
            if delay > 0:
                time.sleep(delay)
                delay *= 2
    raise AssertionError("unreachable")
