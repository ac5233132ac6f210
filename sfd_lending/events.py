"""
Event System Module

Publish/subscribe dispatcher through which the lending core informs the
notification collaborator of loan status changes, payments and subsidy
balance thresholds. Delivery is fire-and-forget: a failing handler is logged
and never fails the operation that published the event. Every calculation
remains re-derivable from storage, so no core behaviour depends on delivery.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class LendingEvent(Enum):
    """Domain events emitted by the lending core"""

    # Loan lifecycle
    LOAN_CREATED = "loan.created"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_DISBURSED = "loan.disbursed"
    LOAN_STATUS_CHANGED = "loan.status_changed"
    LOAN_COMPLETED = "loan.completed"
    LOAN_DEFAULTED = "loan.defaulted"

    # Schedule and payments
    SCHEDULE_GENERATED = "schedule.generated"
    PAYMENT_RECEIVED = "payment.received"
    INSTALLMENT_OVERDUE = "installment.overdue"

    # Subsidies
    SUBSIDY_ALLOCATED = "subsidy.allocated"
    SUBSIDY_USED = "subsidy.used"
    SUBSIDY_LOW_BALANCE = "subsidy.low_balance"
    SUBSIDY_REVOKED = "subsidy.revoked"
    SUBSIDY_EXPIRED = "subsidy.expired"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: LendingEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=LendingEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[LendingEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("sfd_lending.events")

    def subscribe(self, event_type: LendingEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: LendingEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
                self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def emit(self, event_type: LendingEvent, entity_type: str, entity_id: str, **data: Any) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data={key: str(value) if value is not None and not isinstance(value, (str, int, bool)) else value
                  for key, value in data.items()},
        )
        self.publish(event)
        return event

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, event_type: Optional[LendingEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)
