"""Gestor de conexión al broker MQTT.

Usa paho-mqtt. Recorre una lista priorizada de brokers candidatos; si
ninguno responde queda en estado EXHAUSTED y el resto de la aplicación
sigue funcionando sin datos de sensores.

Tras una caída de una conexión establecida aplica backoff exponencial con
tope de intentos. Alcanzado el tope no hay más reconexión automática:
hace falta llamar a ``reconnect()``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable, List, Optional

import orjson
import paho.mqtt.client as mqtt

from common.config import Settings

from ..events import (
    EVENT_CLOSE,
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    EVENT_ERROR,
    EVENT_RECONNECT,
    EventBus,
)
from ..monitoring import metrics
from .broker_config import (
    BrokerCandidate,
    ConnectionPhase,
    ConnectionState,
    InvalidBrokerUrl,
    ReconnectPolicy,
    build_candidates,
)
from .channel import InboundMessage, MessageChannel

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], Any]


def default_client_factory(client_id: str, transport: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        transport=transport,
    )


class BrokerConnectionManager:
    """Dueño exclusivo de la conexión saliente al broker.

    Responsabilidades:
    - Conexión por candidatos en orden de prioridad
    - (Re)suscripción al conjunto completo de tópicos
    - Reconexión con backoff y tope de intentos
    - Entrega de mensajes crudos al canal acotado
    - Eventos de estado de conexión
    """

    def __init__(
        self,
        broker_urls: Iterable[str],
        channel: MessageChannel[InboundMessage],
        events: Optional[EventBus] = None,
        *,
        injected_url: Optional[str] = None,
        base_topic: str = "zigbee2mqtt",
        extra_topics: Iterable[str] = (),
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "capture_server",
        connect_timeout: float = 5.0,
        keepalive: int = 60,
        device_list_delay: float = 1.0,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._broker_urls = list(broker_urls)
        self._injected_url = injected_url
        self._channel = channel
        self._events = events or EventBus()
        self.base_topic = base_topic
        self._extra_topics = list(extra_topics)
        self.username = username
        self.password = password
        self.client_id = client_id
        self._connect_timeout = connect_timeout
        self._keepalive = keepalive
        self._device_list_delay = device_list_delay
        self._policy = reconnect_policy or ReconnectPolicy.from_env()
        self._client_factory = client_factory or default_client_factory

        self._lock = threading.RLock()
        self._connect_lock = threading.Lock()
        self._state = ConnectionState.idle()
        self._client: Optional[Any] = None
        self._candidates: List[BrokerCandidate] = []
        self._active_index: Optional[int] = None
        self._pending_index: Optional[int] = None

        self._connack = threading.Event()
        self._connack_ok = False
        self._stop_event = threading.Event()
        self._reconnect_thread: Optional[threading.Thread] = None
        self._device_list_timer: Optional[threading.Timer] = None

        # Stats
        self._connection_attempts = 0
        self._reconnect_count = 0
        self._last_error: Optional[str] = None
        self._connected_at: float = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        channel: MessageChannel[InboundMessage],
        events: Optional[EventBus] = None,
        **kwargs: Any,
    ) -> "BrokerConnectionManager":
        return cls(
            settings.broker_urls,
            channel,
            events,
            injected_url=settings.injected_broker_url,
            base_topic=settings.base_topic,
            extra_topics=settings.extra_topics,
            username=settings.username,
            password=settings.password,
            client_id=settings.client_id,
            connect_timeout=settings.connect_timeout,
            keepalive=settings.keepalive,
            device_list_delay=settings.device_list_delay,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    def connect(self, broker_url: Optional[str] = None) -> bool:
        """Conecta al primer candidato que responda.

        Nunca lanza excepciones: los fallos terminan en EXHAUSTED y en
        eventos ``error``/``close``.

        Returns:
            True si quedó conectado, False si se agotaron los candidatos
        """
        if broker_url:
            self._injected_url = broker_url

        with self._connect_lock:
            self._cancel_reconnect_loop()
            self._teardown_client()
            self._stop_event.clear()

            self._candidates = build_candidates(self._broker_urls, self._injected_url)
            total = len(self._candidates)

            for index, candidate in enumerate(self._candidates):
                if self._stop_event.is_set():
                    logger.info("[MQTT] Connect cancelled")
                    break

                self._set_state(ConnectionState.connecting(index))
                logger.info("[MQTT] Trying broker %d/%d: %s", index + 1, total, candidate.url)
                if self._attempt(index, candidate):
                    return True

            if self._stop_event.is_set():
                self._set_state(ConnectionState.idle())
                return False

            logger.warning(
                "[MQTT] All %d brokers exhausted. Running without sensor data.", total
            )
            self._set_state(ConnectionState.exhausted())
            self._events.emit(EVENT_CLOSE)
            return False

    def start(self) -> threading.Thread:
        """Lanza ``connect()`` en segundo plano para no bloquear el arranque."""
        thread = threading.Thread(target=self.connect, name="mqtt-connect", daemon=True)
        thread.start()
        return thread

    def reconnect(self) -> bool:
        """Rearma la máquina de estados tras EXHAUSTED o una desconexión manual."""
        logger.info("[MQTT] Manual reconnect requested")
        self.disconnect()
        return self.connect()

    def disconnect(self) -> None:
        """Idempotente: limpia siempre el estado local antes de retornar."""
        self._stop_event.set()
        self._cancel_reconnect_loop()
        had_client = self._teardown_client()

        with self._lock:
            self._active_index = None
            self._connack_ok = False
        self._set_state(ConnectionState.idle())

        if had_client:
            logger.info("[MQTT] Disconnected manually")
            self._events.emit(EVENT_DISCONNECT)

    def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> bool:
        """Publica sin bloquear; False si no hay conexión o paho rechaza el mensaje."""
        with self._lock:
            client = self._client
            connected = self._state.phase == ConnectionPhase.CONNECTED

        if client is None or not connected:
            return False

        try:
            if isinstance(payload, (str, bytes, bytearray)):
                data = payload
            else:
                data = orjson.dumps(payload)
            info = client.publish(topic, data, qos=qos, retain=retain)
            return info.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error("[MQTT] Publish to %s failed: %s", topic, e)
            return False

    def request_devices_list(self) -> bool:
        logger.info("[MQTT] Requesting devices list")
        return self.publish(
            f"{self.base_topic}/bridge/request/devices",
            {"transaction": f"server-request-{int(time.time() * 1000)}"},
        )

    @property
    def subscription_topics(self) -> List[str]:
        topics = [f"{self.base_topic}/#"] + self._extra_topics
        return list(dict.fromkeys(topics))

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state.phase == ConnectionPhase.CONNECTED

    @property
    def candidates(self) -> List[BrokerCandidate]:
        with self._lock:
            return list(self._candidates)

    @property
    def broker_url(self) -> Optional[str]:
        with self._lock:
            if self._active_index is None or self._active_index >= len(self._candidates):
                return None
            return self._candidates[self._active_index].url

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "state": self._state.to_dict(),
                "connected": self._state.phase == ConnectionPhase.CONNECTED,
                "broker": self.broker_url,
                "candidates": [c.url for c in self._candidates],
                "connection_attempts": self._connection_attempts,
                "reconnect_count": self._reconnect_count,
                "last_error": self._last_error,
                "connected_at": self._connected_at,
            }

    def health_check(self) -> dict:
        state = self.state
        return {
            "healthy": state.phase == ConnectionPhase.CONNECTED,
            "phase": state.phase.value,
            "broker": self.broker_url,
            "reconnect_count": self._reconnect_count,
            "last_error": self._last_error,
        }

    # ------------------------------------------------------------------
    # Intentos de conexión
    # ------------------------------------------------------------------

    def _attempt(self, index: int, candidate: BrokerCandidate) -> bool:
        """Un intento contra un candidato, acotado por el connect timeout."""
        self._connection_attempts += 1

        try:
            host, port, transport, tls, ws_path = candidate.endpoint()
        except InvalidBrokerUrl as e:
            self._record_failure(e, "failure")
            return False

        try:
            client = self._client_factory(f"{self.client_id}_{int(time.time() * 1000)}", transport)
            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message
            client.connect_timeout = self._connect_timeout

            if self.username:
                client.username_pw_set(self.username, self.password)
            if tls:
                client.tls_set()
            if transport == "websockets":
                client.ws_set_options(path=ws_path)
        except Exception as e:
            self._record_failure(e, "failure")
            return False

        self._connack.clear()
        with self._lock:
            self._connack_ok = False
            self._pending_index = index
            self._client = client

        try:
            client.connect(host, port, keepalive=self._keepalive)
            client.loop_start()
        except Exception as e:
            self._teardown_client()
            self._record_failure(e, "failure")
            return False

        if not self._connack.wait(self._connect_timeout):
            self._teardown_client()
            self._record_failure(
                TimeoutError(f"No CONNACK from {candidate.url} in {self._connect_timeout:.1f}s"),
                "timeout",
            )
            return False

        with self._lock:
            ok = self._connack_ok
        if not ok or self._stop_event.is_set():
            self._teardown_client()
            if not ok:
                metrics.MQTT_CONNECTION_ATTEMPTS.labels(result="failure").inc()
            return False

        metrics.MQTT_CONNECTION_ATTEMPTS.labels(result="success").inc()
        return True

    def _record_failure(self, error: Exception, result: str) -> None:
        self._last_error = str(error)
        logger.error("[MQTT] Connection error: %s", error)
        metrics.MQTT_CONNECTION_ATTEMPTS.labels(result=result).inc()
        self._events.emit(EVENT_ERROR, error)

    # ------------------------------------------------------------------
    # Reconexión
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._reconnect_thread is not None and self._reconnect_thread.is_alive():
                return
            self._reconnect_thread = threading.Thread(
                target=self._reconnect_loop, name="mqtt-reconnect", daemon=True
            )
            self._reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        self._teardown_client()

        with self._lock:
            index = self._active_index if self._active_index is not None else 0
            candidates = list(self._candidates)
        if not candidates:
            self._set_state(ConnectionState.exhausted())
            return
        candidate = candidates[index]

        for attempt in range(1, self._policy.max_attempts + 1):
            self._reconnect_count += 1
            self._set_state(ConnectionState.reconnecting(attempt))
            delay = self._policy.calculate_delay(attempt)
            logger.info(
                "[MQTT] Reconnecting (attempt %d/%d, next try in %.1fs)...",
                attempt, self._policy.max_attempts, delay,
            )
            self._events.emit(EVENT_RECONNECT, attempt)

            if self._stop_event.wait(delay):
                return
            if self._attempt(index, candidate):
                return
            if self._stop_event.is_set():
                return

        logger.warning(
            "[MQTT] Max reconnect attempts (%d) reached. Automatic reconnection disabled.",
            self._policy.max_attempts,
        )
        self._teardown_client()
        self._set_state(ConnectionState.exhausted())
        self._events.emit(EVENT_CLOSE)

    def _cancel_reconnect_loop(self) -> None:
        with self._lock:
            thread = self._reconnect_thread
            self._reconnect_thread = None
        if thread is None or thread is threading.current_thread():
            return
        # El loop sólo termina antes si _stop_event está puesto
        stop_was_set = self._stop_event.is_set()
        self._stop_event.set()
        thread.join(timeout=self._connect_timeout + 1.0)
        if not stop_was_set:
            self._stop_event.clear()

    def _teardown_client(self) -> bool:
        with self._lock:
            client, self._client = self._client, None
            timer, self._device_list_timer = self._device_list_timer, None
            if self._state.phase == ConnectionPhase.CONNECTED:
                metrics.MQTT_CONNECTED.set(0)

        if timer is not None:
            timer.cancel()
        if client is None:
            return False

        try:
            client.disconnect()
            client.loop_stop()
        except Exception as e:
            logger.warning("[MQTT] Error stopping client: %s", e)
        return True

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            previous, self._state = self._state, state
        if previous.phase != state.phase:
            logger.debug("[MQTT] State %s -> %s", previous.phase.value, state.phase.value)

    # ------------------------------------------------------------------
    # Callbacks de paho (hilo de red)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        """Callback de conexión."""
        with self._lock:
            if client is not self._client:
                return
            index = self._pending_index

        if rc == 0:
            with self._lock:
                self._active_index = index
                self._connack_ok = True
                self._connected_at = time.time()
            self._set_state(ConnectionState.connected(index))
            metrics.MQTT_CONNECTED.set(1)
            logger.info("[MQTT] Connected to %s", self.broker_url)

            self._subscribe_all(client)
            self._schedule_devices_request()
            self._events.emit(EVENT_CONNECT)
        else:
            self._last_error = f"CONNACK refused: {rc}"
            logger.error("[MQTT] Connection refused: rc=%s", rc)
            self._events.emit(EVENT_ERROR, ConnectionRefusedError(self._last_error))

        self._connack.set()

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        """Callback de desconexión."""
        with self._lock:
            if client is not self._client:
                return
            was_connected = self._state.phase == ConnectionPhase.CONNECTED
        metrics.MQTT_CONNECTED.set(0)

        logger.warning("[MQTT] Disconnected (rc=%s)", rc)
        self._events.emit(EVENT_DISCONNECT)

        if was_connected and not self._stop_event.is_set():
            self._schedule_reconnect()

    def _on_message(self, client, userdata, msg):
        """Callback de mensaje: sólo encola."""
        metrics.MQTT_MESSAGES_RECEIVED.inc()
        try:
            self._channel.put(InboundMessage(msg.topic, bytes(msg.payload), time.time()))
        except Exception as e:
            logger.exception("[MQTT] Failed to enqueue message from %s: %s", msg.topic, e)

    def _subscribe_all(self, client) -> None:
        for topic in self.subscription_topics:
            try:
                result, _mid = client.subscribe(topic, qos=0)
                if result == mqtt.MQTT_ERR_SUCCESS:
                    logger.info("[MQTT] Subscribed to %s", topic)
                else:
                    logger.error("[MQTT] Subscribe to %s failed: rc=%s", topic, result)
            except Exception as e:
                logger.error("[MQTT] Subscribe to %s failed: %s", topic, e)

    def _schedule_devices_request(self) -> None:
        timer = threading.Timer(self._device_list_delay, self.request_devices_list)
        timer.daemon = True
        with self._lock:
            previous, self._device_list_timer = self._device_list_timer, timer
        if previous is not None:
            previous.cancel()
        timer.start()
