"""Tests del store durable de sesiones (tres niveles + backups)."""

import orjson
import pytest

from capture_api.storage.atomic import atomic_write_json, read_json
from capture_api.storage.backups import BackupManager
from capture_api.storage.models import (
    ActiveSessions,
    CaptureSession,
    SessionLayout,
    new_primary_record,
)
from capture_api.storage.session_store import (
    DurableSessionStore,
    PersistOutcome,
    StoreConfig,
    has_critical_data,
)


@pytest.fixture
def sessions():
    return ActiveSessions()


@pytest.fixture
def backups():
    return BackupManager(max_backups=5)


@pytest.fixture
def make_store(sessions, backups):
    def _make(**overrides):
        options = dict(flush_every=3, flush_interval=3600.0)
        options.update(overrides)
        return DurableSessionStore(sessions, backups, StoreConfig(**options))
    return _make


@pytest.fixture
def session(tmp_path, sessions):
    """Sesión S1 registrada con su archivo principal inicial."""
    layout = SessionLayout.resolve(tmp_path / "sessions", "S1", "capture.json")
    layout.backup_dir.mkdir(parents=True)
    s = CaptureSession(session_id="S1", layout=layout, device_filters=[])
    atomic_write_json(layout.data_file_path, new_primary_record(s))
    sessions.add(s)
    return s


def read_primary(session):
    return orjson.loads(session.data_file_path.read_bytes())


# =============================================================================
# TIER 1: ARCHIVO PRINCIPAL
# =============================================================================

class TestPrimaryFile:

    def test_batches_every_n_messages(self, make_store, session):
        store = make_store()
        for i in range(7):
            store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": i})

        record = read_primary(session)
        assert record["stats"]["messageCount"] == 6
        assert record["stats"]["saveCount"] == 2
        assert len(record["messages"]["zigbee2mqtt/door1"]) == 6
        assert len(session.pending) == 1

        assert store.flush(session) is True
        record = read_primary(session)
        assert record["stats"]["messageCount"] == 7
        assert [m["payload"]["seq"] for m in record["messages"]["zigbee2mqtt/door1"]] == list(range(7))

    def test_message_count_covers_retained_entries(self, make_store, session):
        store = make_store(flush_every=1, device_data_cap=4)
        for i in range(10):
            store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": i})

        record = read_primary(session)
        retained = len(record["deviceData"]["door1"])
        assert retained == 4
        assert record["stats"]["messageCount"] >= retained
        assert record["deviceData"]["door1"][-1]["payload"] == {"seq": 9}

    def test_flush_after_interval(self, make_store, session):
        store = make_store(flush_every=1000, flush_interval=0)
        session.last_save_time -= 10
        store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": 1})
        assert read_primary(session)["stats"]["messageCount"] == 1

    def test_restores_from_named_backup(self, make_store, session):
        previous = new_primary_record(session)
        previous["messages"] = {"zigbee2mqtt/old": [{"timestamp": "t", "topic": "zigbee2mqtt/old", "device": "old", "payload": 1}]}
        atomic_write_json(session.backup_path, previous)
        session.data_file_path.write_text("{truncated")

        store = make_store()
        for i in range(3):
            store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": i})

        record = read_primary(session)
        assert "zigbee2mqtt/old" in record["messages"]
        assert len(record["messages"]["zigbee2mqtt/door1"]) == 3

    def test_reinitializes_when_backup_unusable(self, make_store, session, caplog):
        session.data_file_path.write_text("{truncated")
        session.backup_path.write_text("[]")

        store = make_store()
        for i in range(3):
            store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": i})

        record = read_primary(session)
        assert record["sessionId"] == "S1"
        assert list(record["messages"]) == ["zigbee2mqtt/door1"]
        assert "previous data lost" in caplog.text

    def test_pending_buffer_is_capped(self, make_store, session):
        store = make_store(flush_every=1000, max_pending=5)
        for i in range(8):
            store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": i})
        assert [e.payload["seq"] for e in session.pending] == [3, 4, 5, 6, 7]


# =============================================================================
# TIERS 2 Y 3
# =============================================================================

class TestDeviceAndConsolidatedFiles:

    def test_device_file_keeps_newest_in_order(self, make_store, session):
        store = make_store(device_file_cap=5)
        for i in range(8):
            store.persist("S1", "zigbee2mqtt/door1", "door1", {"seq": i})

        entries = read_json(session.sensor_data_dir / "door1.json")
        assert [e["data"]["seq"] for e in entries] == [3, 4, 5, 6, 7]
        assert entries[0]["sensor"] == "door1"

    def test_device_file_written_on_every_message(self, make_store, session):
        store = make_store(flush_every=1000)
        store.persist("S1", "zigbee2mqtt/door1", "door1", {"contact": False})
        assert len(read_json(session.sensor_data_dir / "door1.json")) == 1

    def test_consolidated_flattens_payload(self, make_store, session):
        store = make_store()
        store.persist("S1", "zigbee2mqtt/door1", "door1", {"contact": True, "battery": 90})
        store.persist("S1", "zigbee2mqtt/plug", "plug", "ON")

        rows = read_json(session.consolidated_data_path)
        assert rows[0]["sensor"] == "door1"
        assert rows[0]["contact"] is True
        assert rows[0]["battery"] == 90
        assert rows[1]["value"] == "ON"

    def test_device_named_like_consolidated_file(self, make_store, session):
        store = make_store()
        store.persist("S1", "zigbee2mqtt/sensor_data", "sensor_data", {"x": 1})
        assert (session.sensor_data_dir / "device_sensor_data.json").exists()
        assert isinstance(read_json(session.consolidated_data_path), list)

    def test_tier_failure_is_isolated(self, make_store, session):
        """Un nivel roto degrada el resultado pero los demás se escriben."""
        session.consolidated_data_path.mkdir(parents=True)
        store = make_store()

        outcome = store.persist("S1", "zigbee2mqtt/door1", "door1", {"x": 1})

        assert outcome == PersistOutcome.DEGRADED
        assert len(read_json(session.sensor_data_dir / "door1.json")) == 1

    def test_count_device_files(self, make_store, session):
        store = make_store()
        store.persist("S1", "zigbee2mqtt/a", "a", {"x": 1})
        store.persist("S1", "zigbee2mqtt/b", "b", {"x": 1})
        assert store.count_device_files(session) == 2

    def test_count_ignores_emergency_dumps_only(self, make_store, session):
        store = make_store()
        store.persist("S1", "zigbee2mqtt/a", "a", {"x": 1})
        store.persist("S1", "zigbee2mqtt/sensor_data_2", "sensor_data_2", {"x": 1})
        store.emergency_dump(session, "zigbee2mqtt/a", {"x": 2}, RuntimeError("boom"))

        assert (session.sensor_data_dir / "sensor_data_2.json").exists()
        assert store.count_device_files(session) == 2


# =============================================================================
# BACKUPS Y EMERGENCIAS
# =============================================================================

class TestCriticalData:

    @pytest.mark.parametrize("payload,expected", [
        ({"temperature": 21}, True),
        ({"contact": False}, True),
        ({"linkquality": 80}, False),
        ("temperature", False),
    ])
    def test_has_critical_data(self, payload, expected):
        assert has_critical_data(payload) is expected

    def test_critical_payload_triggers_backup(self, make_store, session, backups):
        store = make_store()
        store.persist("S1", "zigbee2mqtt/door1", "door1", {"linkquality": 80})
        assert backups.list_backups(session) == []

        store.persist("S1", "zigbee2mqtt/door1", "door1", {"temperature": 21.5})
        assert len(backups.list_backups(session)) == 1
        assert session.backup_path.exists()

    def test_emergency_dump(self, make_store, session):
        store = make_store()
        path = store.emergency_dump(session, "zigbee2mqtt/door1", {"x": 1}, RuntimeError("boom"))

        assert path.name.startswith("emergency_messages_")
        record = read_json(path)
        assert record["topic"] == "zigbee2mqtt/door1"
        assert record["message"] == {"x": 1}
        assert "boom" in record["error"]


# =============================================================================
# ESTADO DE LA SESIÓN
# =============================================================================

class TestSessionState:

    def test_unknown_session_is_skipped(self, make_store, session):
        assert make_store().persist("nope", "t", "d", {}) == PersistOutcome.SKIPPED

    def test_inactive_session_is_skipped(self, make_store, session):
        session.active = False
        store = make_store()
        assert store.persist("S1", "zigbee2mqtt/door1", "door1", {}) == PersistOutcome.SKIPPED
        assert not (session.sensor_data_dir / "door1.json").exists()

    def test_finalize_is_strict(self, make_store, session):
        session.data_file_path.unlink()
        with pytest.raises(OSError):
            make_store().finalize_primary(session, "2026-01-01T00:00:00.000Z", 1000, 0)

    def test_finalize_merges_pending(self, make_store, session):
        store = make_store(flush_every=1000)
        store.persist("S1", "zigbee2mqtt/door1", "door1", {"x": 1})

        stats = store.finalize_primary(session, "2026-01-01T00:00:00.000Z", 1500, 1)

        record = read_primary(session)
        assert record["status"] == "completed"
        assert record["duration"] == 1500
        assert stats["messageCount"] == 1
        assert stats["sensorCount"] == 1
        assert stats["topicCount"] == 1
        assert stats["sensorFilesCount"] == 1
        assert session.pending == []
