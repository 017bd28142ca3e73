from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


class EventBroadcaster:
    """
    In-process publish/subscribe channel for lifecycle events.

    Delivery is best-effort and at-most-once: events are handed to the listeners subscribed
    at publish time, nothing is buffered for late subscribers, and a failing listener never
    affects the publisher or the other listeners. The event log, not this channel, is the
    record of what happened.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = Lock()

    # PUBLIC_INTERFACE
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    # PUBLIC_INTERFACE
    def publish(self, event: Dict[str, Any]) -> int:
        """Deliver an event to current listeners. Returns the number of successful deliveries."""
        with self._lock:
            listeners = list(self._listeners)

        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception("Event listener failed for alertId=%s type=%s", event.get("alertId"), event.get("type"))
        return delivered

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
