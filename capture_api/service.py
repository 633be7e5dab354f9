"""Servicio de captura.

Objeto único, construido al arrancar el proceso y pasado explícitamente a
quien lo consuma (capa web, broadcaster WebSocket). Reúne:

- BrokerConnectionManager: conexión y suscripciones
- MessageChannel + MessageConsumer: desacople entre red y persistencia
- TopicRegistry / DeviceDirectory: metadatos observados
- MessageRouter + DurableSessionStore: captura por sesión
- SessionLifecycleController: inicio y cierre de sesiones

Uso:
    service = CaptureService(get_settings()).init()
    service.register_session(42, "session_42.json")
    ...
    service.end_session(42)
    service.shutdown()
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from common.config import Settings, get_settings

from .events import EventBus, EventHandler
from .monitoring.health import HealthChecker
from .mqtt.broker_config import ReconnectPolicy
from .mqtt.channel import ChannelConfig, InboundMessage, MessageChannel
from .mqtt.connection import BrokerConnectionManager, ClientFactory
from .mqtt.message_handler import MessageConsumer, MessageHandler
from .registry.devices import Device, DeviceDirectory
from .registry.snapshot import RegistrySnapshot
from .registry.topics import TopicRegistry
from .routing.router import MessageRouter
from .sessions.controller import SessionLifecycleController
from .sessions.scheduler import RecurringTask
from .storage.backups import BackupManager
from .storage.models import ActiveSessions
from .storage.session_store import DurableSessionStore, StoreConfig

logger = logging.getLogger(__name__)


class CaptureService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        channel_config: Optional[ChannelConfig] = None,
        store_config: Optional[StoreConfig] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
    ):
        self.settings = settings or get_settings()
        base_topic = self.settings.base_topic

        self.events = EventBus()
        self.registry = TopicRegistry()
        self.directory = DeviceDirectory(base_topic)
        self.snapshot = RegistrySnapshot(self.settings.data_dir)

        self.sessions = ActiveSessions()
        self.backups = BackupManager(self.settings.max_backups)
        self.store = DurableSessionStore(self.sessions, self.backups, store_config)
        self.router = MessageRouter(self.sessions, self.store, base_topic)

        self.channel: MessageChannel[InboundMessage] = MessageChannel(channel_config)
        self.connection = BrokerConnectionManager.from_settings(
            self.settings,
            self.channel,
            self.events,
            reconnect_policy=reconnect_policy,
            client_factory=client_factory,
        )
        self.controller = SessionLifecycleController(
            self.sessions,
            self.store,
            self.backups,
            self.directory,
            sessions_dir=self.settings.sessions_dir,
            base_topic=base_topic,
            backup_interval=self.settings.backup_interval,
            broker_url_provider=lambda: self.connection.broker_url,
        )

        self.handler = MessageHandler(
            self.registry,
            self.directory,
            self.router,
            self.events,
            snapshot=self.snapshot,
        )
        self.consumer = MessageConsumer(self.channel, self.handler)
        self._health = HealthChecker(self.settings.sessions_dir)
        self._topics_task: Optional[RecurringTask] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def init(self, connect: bool = True, wait: bool = False) -> "CaptureService":
        """Restaura el registro, arranca el consumidor y conecta al broker.

        Con ``wait=False`` la conexión corre en background: un broker caído
        nunca bloquea el arranque.
        """
        if self._initialized:
            return self

        self.snapshot.load_into(self.registry, self.directory)
        self.consumer.start()
        self._topics_task = RecurringTask(
            "registry-topics-save",
            self.settings.topics_save_interval,
            self._save_topics,
        )
        self._topics_task.start()
        if connect:
            if wait:
                self.connection.connect()
            else:
                self.connection.start()

        self._initialized = True
        logger.info("[SERVICE] Capture service initialized (base topic %s)", self.settings.base_topic)
        return self

    def shutdown(self) -> None:
        """Desconecta, drena el canal y vuelca lo pendiente de cada sesión activa."""
        if not self._initialized:
            return

        self.connection.disconnect()
        self.consumer.stop()
        if self._topics_task is not None:
            self._topics_task.cancel()
            self._topics_task = None
        self.controller.close()
        self._save_topics()
        self._initialized = False
        logger.info("[SERVICE] Capture service stopped")

    def _save_topics(self) -> None:
        self.snapshot.save_topics(self.registry.topics())

    # ------------------------------------------------------------------
    # Sesiones
    # ------------------------------------------------------------------

    def register_session(self, session_id: Any, data_file_path: Any, devices: Optional[Iterable[Any]] = None) -> bool:
        return self.controller.start(session_id, data_file_path, devices)

    def end_session(self, session_id: Any) -> bool:
        return self.controller.end(session_id)

    def active_sessions(self) -> List[dict]:
        return self.controller.active_sessions()

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------

    def get_devices_list(self) -> List[Device]:
        return self.directory.devices()

    def get_topics(self) -> List[str]:
        return self.registry.topics()

    def get_message_history(self, topic: str) -> List[dict]:
        return self.registry.history(topic)

    # ------------------------------------------------------------------
    # Broker
    # ------------------------------------------------------------------

    def publish_message(self, topic: str, payload: Any) -> bool:
        return self.connection.publish(topic, payload)

    def connect(self, broker_url: Optional[str] = None) -> bool:
        return self.connection.connect(broker_url)

    def reconnect(self) -> bool:
        return self.connection.reconnect()

    def disconnect(self) -> None:
        self.connection.disconnect()

    def get_connection_state(self) -> dict:
        return self.connection.state.to_dict()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    # ------------------------------------------------------------------
    # Eventos
    # ------------------------------------------------------------------

    def register_handler(self, event: str, handler: EventHandler) -> None:
        self.events.register_handler(event, handler)

    def remove_handler(self, event: str, handler: EventHandler) -> None:
        self.events.remove_handler(event, handler)

    # ------------------------------------------------------------------
    # Monitoreo
    # ------------------------------------------------------------------

    def health_check(self) -> dict:
        status = self._health.get_status(
            mqtt_connected=self.connection.is_connected,
            connection_phase=self.connection.state.phase.value,
            active_sessions=len(self.sessions),
            processed=self.handler.stats.processed,
            failed=self.handler.stats.failed,
        )
        return status.to_dict()

    @property
    def stats(self) -> dict:
        return {
            "connection": self.connection.stats,
            "channel": self.channel.get_stats(),
            "messages": self.handler.stats.to_dict(),
            "store": self.store.stats,
            "backups": self.backups.stats,
            "events": self.events.stats,
            "topics": len(self.registry),
            "devices": len(self.directory),
            "active_sessions": self.sessions.ids(),
        }
