"""
Event System Module

Publish/subscribe dispatcher for domain events. Events are published only
after the operation that produced them has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the yield ledger"""

    YIELD_DEPOSITED = "yield.deposited"
    YIELD_SETTLED = "yield.settled"
    YIELD_CLAIMED = "yield.claimed"
    BALANCE_CHANGED = "holder.balance_changed"

    INTERMEDIARY_REGISTERED = "intermediary.registered"
    INTERMEDIARY_UNREGISTERED = "intermediary.unregistered"
    PENDING_ORDER_REGISTERED = "intermediary.order_registered"
    PENDING_ORDER_RELEASED = "intermediary.order_released"


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
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Central event dispatcher: publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("yield_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug("Subscribed handler %s to %s",
                              getattr(handler, "__name__", repr(handler)), event_type.value)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning("Handler %s was not subscribed to %s",
                                    getattr(handler, "__name__", repr(handler)), event_type.value)

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug("Publishing event %s for %s:%s",
                          event.event_type.value, event.entity_type, event.entity_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # The ledger change is already committed; a subscriber cannot undo it
                self.logger.error("Error in event handler %s for %s: %s",
                                  getattr(handler, "__name__", repr(handler)), event.event_type.value, e)

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)
