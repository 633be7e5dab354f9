"""Fixtures compartidas: broker MQTT falso y settings aislados en tmp_path."""

import time
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional, Set, Tuple
from unittest.mock import MagicMock

import pytest

from common.config import Settings


class FakeMQTTClient:
    """Sustituto de paho.mqtt.client.Client sin red.

    ``connect`` falla para endpoints no alcanzables; ``loop_start`` entrega
    el CONNACK de forma síncrona cuando el broker acepta.
    """

    def __init__(self, broker: "FakeBroker", client_id: str, transport: str):
        self._broker = broker
        self.client_id = client_id
        self.transport = transport
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.connect_timeout = None
        self.host: Optional[str] = None
        self.port: Optional[int] = None
        self.credentials = None
        self.tls = False
        self.ws_path: Optional[str] = None
        self.subscriptions: List[str] = []
        self.published: List[Tuple[str, object]] = []
        self.disconnected = False
        self.loop_stopped = False

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def tls_set(self):
        self.tls = True

    def ws_set_options(self, path="/mqtt", headers=None):
        self.ws_path = path

    def connect(self, host, port, keepalive=60):
        self.host, self.port = host, port
        if (host, port) not in self._broker.reachable:
            raise ConnectionRefusedError(f"{host}:{port} unreachable")

    def loop_start(self):
        if self._broker.silent:
            return
        rc = 0 if self._broker.accept else 5
        self.on_connect(self, None, {}, rc, None)

    def loop_stop(self):
        self.loop_stopped = True

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topic, qos=0):
        self.subscriptions.append(topic)
        return 0, len(self.subscriptions)

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload))
        return MagicMock(rc=0)

    # Helpers de test
    def deliver(self, topic: str, payload: bytes) -> None:
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def drop(self, rc: int = 7) -> None:
        self.on_disconnect(self, None, {}, rc, None)


class FakeBroker:
    def __init__(self, reachable: Optional[Set[Tuple[str, int]]] = None, accept: bool = True, silent: bool = False):
        self.reachable = set(reachable or ())
        self.accept = accept
        self.silent = silent
        self.clients: List[FakeMQTTClient] = []

    def factory(self, client_id: str, transport: str) -> FakeMQTTClient:
        client = FakeMQTTClient(self, client_id, transport)
        self.clients.append(client)
        return client

    @property
    def last_client(self) -> FakeMQTTClient:
        return self.clients[-1]


@pytest.fixture
def fake_broker() -> FakeBroker:
    """Broker falso alcanzable en localhost:1883."""
    return FakeBroker(reachable={("localhost", 1883)})


@pytest.fixture
def dead_broker() -> FakeBroker:
    """Ningún endpoint alcanzable."""
    return FakeBroker()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        broker_urls=["mqtt://localhost:1883"],
        injected_broker_url=None,
        base_topic="zigbee2mqtt",
        extra_topics=[],
        username=None,
        password=None,
        client_id="capture_test",
        connect_timeout=0.5,
        keepalive=60,
        device_list_delay=60.0,
        data_dir=tmp_path / "data",
        sessions_dir=tmp_path / "sessions",
        backup_interval=3600.0,
        max_backups=5,
    )


@pytest.fixture
def wait_for():
    """Espera activa acotada para efectos producidos en otros threads."""

    def _wait(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def broker_factory():
    """Construye brokers falsos con comportamiento a medida."""
    return FakeBroker
