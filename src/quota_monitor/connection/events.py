# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Subscribe/callback registry for connection events.

Listeners are plain callables taking the event payload. Delivery is
synchronous and in registration order, iterating over a copy of the
listener list so listeners may subscribe or unsubscribe while an event is
being delivered. A failing listener is logged and does not stop delivery to
the others.
"""

import logging
from typing import Any, Callable, Dict, List, Union

from ..core.types import ConnectionEvent

lib_logger = logging.getLogger("quota_monitor")

Listener = Callable[[Any], None]
EventName = Union[ConnectionEvent, str]


class EventBus:
    """
    Event registry used by the ConnectionManager.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(ConnectionEvent.QUOTA_UPDATE, on_snapshot)
        ...
        unsubscribe()
    """

    def __init__(self):
        self._listeners: Dict[ConnectionEvent, List[Listener]] = {}

    def subscribe(self, event: EventName, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes this registration
        """
        key = ConnectionEvent(event)
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            self.off(key, listener)

        return unsubscribe

    # Alias matching the event-emitter vocabulary
    on = subscribe

    def off(self, event: EventName, listener: Listener) -> bool:
        """Remove a listener; returns False if it was not registered."""
        listeners = self._listeners.get(ConnectionEvent(event), [])
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        return True

    def listener_count(self, event: EventName) -> int:
        return len(self._listeners.get(ConnectionEvent(event), []))

    def clear(self) -> None:
        """Remove every listener."""
        self._listeners.clear()

    def emit(self, event: EventName, payload: Any = None) -> None:
        """Deliver an event to every listener registered at call time."""
        key = ConnectionEvent(event)
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(payload)
            except Exception:
                lib_logger.exception(f"Listener for '{key.value}' event raised")
