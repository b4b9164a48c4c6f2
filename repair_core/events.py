"""
Event System Module

Publish/subscribe dispatcher that decouples the case workflow engine from
the approval engine. The approval engine never touches workflow instances
directly; it publishes CASE_CONTEXT_PATCHED and the execution engine's
subscription merges the patch into the running instance of that case.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events raised by the repair workflow core"""

    # Case workflow events
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_TRANSITIONED = "workflow.transitioned"
    WORKFLOW_ESCALATED = "workflow.escalated"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    WORKFLOW_FROZEN = "workflow.frozen"

    # Approval events
    APPROVAL_SUBMITTED = "approval.submitted"
    APPROVAL_LEVEL_ADVANCED = "approval.level_advanced"
    APPROVAL_COMPLETED = "approval.completed"
    APPROVAL_REJECTED = "approval.rejected"
    APPROVAL_ESCALATED = "approval.escalated"
    APPROVAL_DELEGATED = "approval.delegated"

    # Cross-machine coupling
    CASE_CONTEXT_PATCHED = "case.context_patched"

    # Document events
    DOCUMENT_STATUS_CHANGED = "document.status_changed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)
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
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("drms.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            if event_type in self._handlers:
                try:
                    self._handlers[event_type].remove(handler)
                    self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")
                except ValueError:
                    self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def unsubscribe_all(self, handler: Callable) -> None:
        """Remove a global handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning(f"Global handler {_handler_name(handler)} was not subscribed")

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers.

        Handlers run synchronously in subscription order. A failing handler
        is logged and does not stop the others or the publisher.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            global_handlers = list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

        for handler in global_handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Error in global event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)

    def get_subscribed_events(self) -> List[DomainEvent]:
        """Get list of events that have subscribers"""
        with self._lock:
            return [event_type for event_type, handlers in self._handlers.items() if handlers]
