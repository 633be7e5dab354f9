"""Canal acotado entre el gestor de conexión y el router de mensajes.

El hilo de red de paho sólo encola; un hilo consumidor procesa. Si la
persistencia se atrasa, la cola aplica backpressure descartando mensajes
según la política configurada.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ChannelConfig:
    """Configuración del canal."""
    max_queue_size: int = 10000
    drop_oldest: bool = True  # True = drop oldest, False = drop newest

    @classmethod
    def from_env(cls) -> "ChannelConfig":
        return cls(
            max_queue_size=int(os.getenv("MQTT_QUEUE_MAX_SIZE", "10000")),
            drop_oldest=os.getenv("MQTT_DROP_OLDEST", "true").lower() == "true",
        )


@dataclass
class ChannelStats:
    """Estadísticas del canal."""
    enqueued: int = 0
    dequeued: int = 0
    dropped: int = 0
    last_drop_at: float = 0


@dataclass(frozen=True)
class InboundMessage:
    """Mensaje crudo recibido del broker."""
    topic: str
    payload: bytes
    received_at: float


class MessageChannel(Generic[T]):
    """Cola thread-safe con límite de tamaño.

    Uso:
        channel = MessageChannel[InboundMessage]()

        # Productor (callback de paho)
        channel.put(message)

        # Consumidor
        message = channel.get(timeout=1.0)
    """

    def __init__(self, config: Optional[ChannelConfig] = None):
        self._config = config or ChannelConfig.from_env()
        self._queue: deque[T] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._closed = False
        self._stats = ChannelStats()

    def put(self, item: T) -> bool:
        """Agrega un item.

        Returns:
            True si el item quedó encolado, False si se descartó o el canal está cerrado
        """
        with self._lock:
            if self._closed:
                return False

            if len(self._queue) >= self._config.max_queue_size:
                self._stats.dropped += 1
                self._stats.last_drop_at = time.time()
                if not self._config.drop_oldest:
                    logger.debug("[CHANNEL] Full: dropped newest message")
                    return False
                self._queue.popleft()
                logger.debug("[CHANNEL] Full: dropped oldest message")

            self._queue.append(item)
            self._stats.enqueued += 1
            self._not_empty.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Obtiene un item.

        Args:
            timeout: Segundos a esperar (None = bloquear hasta item o cierre)

        Returns:
            Item o None si timeout o canal cerrado y vacío
        """
        with self._not_empty:
            if not self._queue and not self._closed:
                self._not_empty.wait(timeout)

            if not self._queue:
                return None

            self._stats.dequeued += 1
            return self._queue.popleft()

    def close(self) -> None:
        """Cierra el canal y despierta a los consumidores."""
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()

    def reopen(self) -> None:
        with self._lock:
            self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._queue)

    def get_stats(self) -> dict:
        with self._lock:
            size = len(self._queue)
            return {
                "enqueued": self._stats.enqueued,
                "dequeued": self._stats.dequeued,
                "dropped": self._stats.dropped,
                "current_size": size,
                "max_size": self._config.max_queue_size,
                "utilization_pct": (size / self._config.max_queue_size * 100)
                    if self._config.max_queue_size > 0 else 0,
            }
