"""
Content Event Bus.

In-process observer for content-mutation notifications (item created or
updated). Delivery is synchronous and fire-and-forget: a failing
subscriber is logged and never propagates to the publisher.
"""

from typing import Callable, List
from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading

from .store.catalog import utcnow

logger = logging.getLogger(__name__)

CONTENT_EVENT_KINDS = ('created', 'updated')


@dataclass(frozen=True)
class ContentEvent:
    item_id: int
    kind: str = 'updated'
    timestamp: datetime = field(default_factory=utcnow)


Subscriber = Callable[[ContentEvent], None]


class ContentEventBus:

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event: ContentEvent) -> int:
        """Deliver to all subscribers. Returns the number that succeeded."""
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for callback in subscribers:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Content event subscriber failed for item {event.item_id}: {e}", exc_info=True)
        return delivered
