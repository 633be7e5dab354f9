"""Procesamiento de mensajes entrantes.

El consumidor drena el canal acotado en su propio thread, de modo que el
thread de red de paho nunca espera a la persistencia.

Por cada mensaje:
1. parseo del payload (JSON, o el texto crudo)
2. registro del tópico y del historial reciente
3. actualización del directorio en ``<base>/bridge/devices``
4. resolución del dispositivo y ruteo a las sesiones activas
5. evento ``message`` para los colaboradores
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

import orjson

from ..events import EVENT_MESSAGE, EventBus
from ..monitoring import metrics
from ..registry.devices import DeviceDirectory
from ..registry.snapshot import RegistrySnapshot
from ..registry.topics import TopicRegistry
from ..routing.router import MessageRouter
from .channel import InboundMessage, MessageChannel
from .receiver_stats import ReceiverStats

logger = logging.getLogger(__name__)

SLOW_PROCESSING_MS = 200
STATS_LOG_EVERY = 100


def parse_payload(payload: bytes) -> Any:
    """JSON si es válido; si no, el texto tal cual."""
    try:
        return orjson.loads(payload)
    except orjson.JSONDecodeError:
        return payload.decode("utf-8", errors="replace")


class MessageHandler:
    def __init__(
        self,
        registry: TopicRegistry,
        directory: DeviceDirectory,
        router: MessageRouter,
        events: EventBus,
        snapshot: Optional[RegistrySnapshot] = None,
        slow_threshold_ms: float = SLOW_PROCESSING_MS,
    ):
        self._registry = registry
        self._directory = directory
        self._router = router
        self._events = events
        self._snapshot = snapshot
        self._slow_threshold_ms = slow_threshold_ms
        self.stats = ReceiverStats()

    def handle(self, message: InboundMessage) -> None:
        topic = message.topic
        self.stats.received += 1
        self.stats.last_message_at = message.received_at
        payload = parse_payload(message.payload)

        t0 = time.monotonic()
        try:
            if self._registry.record_topic(topic):
                logger.debug("[MQTT] New topic: %s", topic)
            self._registry.record_message(topic, payload)

            if topic == self._directory.devices_topic:
                self._handle_devices_list(payload)

            device_id = self._directory.resolve_device_id(topic, payload)
            results = self._router.route(topic, payload, device_id)
            self.stats.captured += len(results)
            self.stats.processed += 1
        except Exception as e:
            self.stats.failed += 1
            logger.exception("[MQTT] Processing error on %s: %s", topic, e)
            return
        finally:
            elapsed = time.monotonic() - t0
            metrics.ROUTING_LATENCY.observe(elapsed)

        if elapsed * 1000 > self._slow_threshold_ms:
            self.stats.slow += 1
            logger.warning("[MQTT] Processing %s took %.0fms", topic, elapsed * 1000)

        self._events.emit(EVENT_MESSAGE, {"topic": topic, "payload": payload})

        if self.stats.processed % STATS_LOG_EVERY == 0:
            logger.info("[MQTT] %s", self.stats)

    def _handle_devices_list(self, payload: Any) -> None:
        if not self._directory.update_device_list(payload):
            logger.warning("[MQTT] Ignoring malformed devices list on %s", self._directory.devices_topic)
            return
        if self._snapshot is not None:
            self._snapshot.save_devices(self._directory.raw_devices())


class MessageConsumer:
    """Thread que drena el canal y entrega cada mensaje al handler."""

    def __init__(self, channel: MessageChannel[InboundMessage], handler: MessageHandler, poll_timeout: float = 0.5):
        self._channel = channel
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._channel.reopen()
        self._thread = threading.Thread(target=self._run, name="capture-consumer", daemon=True)
        self._thread.start()
        logger.info("[MQTT] Message consumer started")

    def stop(self, timeout: float = 5.0) -> None:
        """Detiene el consumidor tras procesar lo que quede en el canal."""
        self._stop_event.set()
        self._channel.close()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("[MQTT] Message consumer stopped. %s", self._handler.stats)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while True:
            message = self._channel.get(timeout=self._poll_timeout)
            if message is None:
                if self._stop_event.is_set() or self._channel.closed:
                    break
                continue
            try:
                self._handler.handle(message)
            except Exception as e:
                logger.exception("[MQTT] Consumer error: %s", e)
