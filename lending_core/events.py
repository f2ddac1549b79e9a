"""
Event System Module

Publish/subscribe dispatcher for domain events. Collaborators outside the
package (SMS and email notifications, dashboards) subscribe here; events are
published only after the originating transaction has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
import uuid

from .logging_config import get_logger, log_action


class DomainEvent(Enum):
    """Domain events that can occur in the lending core"""

    # Application events
    APPLICATION_SUBMITTED = "application.submitted"
    APPLICATION_APPROVED = "application.approved"
    APPLICATION_REJECTED = "application.rejected"

    # Loan events
    LOAN_CREATED = "loan.created"
    LOAN_DISBURSED = "loan.disbursed"
    REPAYMENT_RECORDED = "loan.repayment_recorded"
    LOAN_CLOSED = "loan.closed"

    # Borrower events
    BORROWER_REGISTERED = "borrower.registered"
    CREDIT_RATING_CHANGED = "borrower.credit_rating_changed"


EventHandler = Callable[['EventPayload'], Any]


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
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
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=timestamp,
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._lock = RLock()
        self.logger = get_logger("events")

    def subscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug("Subscribed handler %s to %s", _handler_name(handler), event_type.value)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug("Subscribed global handler %s", _handler_name(handler))

    def unsubscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning("Handler %s was not subscribed to %s",
                                    _handler_name(handler), event_type.value)

    def unsubscribe_all(self, handler: EventHandler) -> None:
        """Remove a global handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning("Global handler %s was not subscribed", _handler_name(handler))

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers

        A failing handler is logged and skipped; it never fails the operation
        that published the event.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug("Publishing %s for %s:%s", event.event_type.value, event.entity_type, event.entity_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                log_action(
                    self.logger, "error",
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}",
                    action="publish_event",
                    resource=f"{event.entity_type}:{event.entity_id}",
                    extra={"event_id": event.event_id},
                    exc_info=True
                )

    def emit(self, event_type: DomainEvent, entity_type: str, entity_id: str,
             data: Optional[Dict[str, Any]] = None) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(event_type, entity_type, entity_id, data or {})
        self.publish(event)
        return event

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


# Global event dispatcher instance
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher
