"""Tests de los endpoints de diagnóstico.

Ejecutar:
    pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from capture_api.app import create_app
from capture_api.mqtt.broker_config import ReconnectPolicy
from capture_api.service import CaptureService


@pytest.fixture
def service(settings, dead_broker):
    return CaptureService(
        settings,
        client_factory=dead_broker.factory,
        reconnect_policy=ReconnectPolicy(base_delay=0.01, multiplier=1.5, max_delay=0.05, max_attempts=1),
    )


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


# =============================================================================
# ENDPOINTS
# =============================================================================

class TestDiagnosticsEndpoints:

    def test_health(self, client):
        resp = client.get("/capture/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["healthy"] is True
        assert data["mqtt_connected"] is False

    def test_stats(self, client):
        data = client.get("/capture/stats").json()
        assert set(data) >= {"connection", "channel", "messages", "store", "backups"}

    def test_connection_state(self, client):
        assert "phase" in client.get("/capture/connection").json()

    def test_devices(self, client, service):
        service.directory.update_device_list([{"friendly_name": "door1"}])
        devices = client.get("/capture/devices").json()
        assert devices[0]["id"] == "door1"
        assert devices[0]["topic"] == "zigbee2mqtt/door1"

    def test_topics_and_history(self, client, service):
        service.registry.record_topic("zigbee2mqtt/door1")
        service.registry.record_message("zigbee2mqtt/door1", {"contact": True}, timestamp_ms=1)

        assert client.get("/capture/topics").json() == ["zigbee2mqtt/door1"]
        history = client.get("/capture/history", params={"topic": "zigbee2mqtt/door1"}).json()
        assert history == [{"timestamp": 1, "payload": {"contact": True}}]

    def test_history_requires_topic(self, client):
        assert client.get("/capture/history").status_code == 422

    def test_sessions(self, client, service):
        service.register_session("S1", "capture.json")
        sessions = client.get("/capture/sessions").json()
        assert [s["sessionId"] for s in sessions] == ["S1"]

    def test_metrics(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "capture_" in resp.text


class TestAppLifecycle:

    def test_service_missing(self, service):
        app = create_app(service, manage_lifecycle=False)
        app.state.capture_service = None
        with TestClient(app) as c:
            assert c.get("/capture/health").status_code == 503

    def test_lifespan_initializes_and_stops(self, service):
        with TestClient(create_app(service)):
            assert service.consumer.running
        assert not service.consumer.running
