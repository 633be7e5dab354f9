"""Named-event listeners for capture service collaborators.

The WebSocket broadcaster and the device-discovery persistence register
here for ``connect``, ``disconnect``, ``close``, ``reconnect``, ``error``
and ``message``.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[..., None]

EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"
EVENT_CLOSE = "close"
EVENT_RECONNECT = "reconnect"
EVENT_ERROR = "error"
EVENT_MESSAGE = "message"

KNOWN_EVENTS = (
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    EVENT_CLOSE,
    EVENT_RECONNECT,
    EVENT_ERROR,
    EVENT_MESSAGE,
)


class EventBus:
    """Thread-safe registry of handlers per event name."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._emitted: Dict[str, int] = defaultdict(int)

    def register_handler(self, event: str, handler: EventHandler) -> None:
        if event not in KNOWN_EVENTS:
            raise ValueError(f"Unknown event: {event}")
        with self._lock:
            self._handlers[event].append(handler)

    def remove_handler(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        """Invoca los handlers registrados; sus errores se registran y no se propagan."""
        with self._lock:
            handlers = list(self._handlers.get(event, []))
            self._emitted[event] += 1

        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                logger.exception("[EVENTS] Handler for '%s' failed: %s", event, e)

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "emitted": dict(self._emitted),
                "handlers": {name: len(items) for name, items in self._handlers.items()},
            }
