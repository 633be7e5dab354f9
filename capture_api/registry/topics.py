"""Registry of observed topics plus a short per-topic history."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

HISTORY_SIZE = 20


class TopicRegistry:
    """Append-only topic set and a ring buffer of the latest messages per topic.

    The history is for live inspection only; it is not a durability mechanism
    and is independent of any capture session.
    """

    def __init__(self, history_size: int = HISTORY_SIZE):
        self._history_size = history_size
        self._topics: Dict[str, None] = {}
        self._history: Dict[str, Deque[dict]] = {}
        self._lock = threading.Lock()

    def record_topic(self, topic: str) -> bool:
        """Registra el tópico. Returns True si es la primera vez que se ve."""
        with self._lock:
            if topic in self._topics:
                return False
            self._topics[topic] = None
            return True

    def record_message(self, topic: str, payload: Any, timestamp_ms: Optional[int] = None) -> None:
        entry = {
            "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            "payload": payload,
        }
        with self._lock:
            history = self._history.get(topic)
            if history is None:
                history = deque(maxlen=self._history_size)
                self._history[topic] = history
            history.append(entry)

    def load_topics(self, topics: Iterable[str]) -> int:
        """Merge topics restored from a snapshot. Returns how many were new."""
        added = 0
        with self._lock:
            for topic in topics:
                if isinstance(topic, str) and topic not in self._topics:
                    self._topics[topic] = None
                    added += 1
        return added

    def topics(self) -> List[str]:
        with self._lock:
            return list(self._topics)

    def history(self, topic: str) -> List[dict]:
        with self._lock:
            return list(self._history.get(topic, ()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._topics)
