from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .protocol import StreamEvent

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], None]


@dataclass(frozen=True, slots=True)
class EventFilter:
    kinds: set[str] | None = None
    turn_id: str | None = None

    def matches(self, event: StreamEvent) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.turn_id is not None and event.turn_id != self.turn_id:
            return False
        return True


class EventBus:
    """
    Typed publish point between the stream decoder and UI listeners.

    Delivery is synchronous and in publish order. The publish lock is re-entrant so a
    handler may publish (or call back into the orchestrator) from inside a dispatch.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._next_sub_id = 1
        self._subs: dict[int, tuple[EventHandler, EventFilter]] = {}

    def subscribe(self, handler: EventHandler, filt: EventFilter | None = None) -> int:
        with self._lock:
            sub_id = self._next_sub_id
            self._next_sub_id += 1
            self._subs[sub_id] = (handler, filt or EventFilter())
            return sub_id

    def unsubscribe(self, subscription_id: int) -> None:
        with self._lock:
            self._subs.pop(subscription_id, None)

    def publish(self, event: StreamEvent) -> None:
        with self._lock:
            for handler, filt in list(self._subs.values()):
                if not filt.matches(event):
                    continue
                try:
                    handler(event)
                except Exception:
                    # One broken listener must not starve the others.
                    LOGGER.exception("Event handler failed for kind=%s", event.kind)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)
