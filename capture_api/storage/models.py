"""Modelos de sesión de captura y formato de los registros en disco."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..registry.devices import sanitize_identifier

CONSOLIDATED_FILE = "sensor_data.json"


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class SessionLayout:
    """Rutas de los artefactos de una sesión.

    sessions/Session<id>/
      <data file>
      backup/session_<id>_data.json
      backup/session_<id>_backup_<ms>.json
      backup/session_<id>_final_<ms>.json
      sensor_data/<device>.json
      sensor_data/sensor_data.json
      logs/session_<id>_log.txt
      export/session_<id>_export.json
    """

    session_id: str
    data_file_path: Path

    @classmethod
    def resolve(cls, sessions_dir: Path, session_id: str, data_file_path: Any) -> "SessionLayout":
        path = Path(data_file_path)
        # Un nombre de archivo suelto va dentro del directorio de la sesión
        if not path.is_absolute() and path.parent == Path("."):
            path = Path(sessions_dir) / f"Session{session_id}" / path
        return cls(session_id=str(session_id), data_file_path=path)

    @property
    def session_dir(self) -> Path:
        return self.data_file_path.parent

    @property
    def backup_dir(self) -> Path:
        return self.session_dir / "backup"

    @property
    def sensor_data_dir(self) -> Path:
        return self.session_dir / "sensor_data"

    @property
    def logs_dir(self) -> Path:
        return self.session_dir / "logs"

    @property
    def export_dir(self) -> Path:
        return self.session_dir / "export"

    @property
    def named_backup_path(self) -> Path:
        return self.backup_dir / f"session_{self.session_id}_data.json"

    @property
    def consolidated_data_path(self) -> Path:
        return self.sensor_data_dir / CONSOLIDATED_FILE

    @property
    def log_path(self) -> Path:
        return self.logs_dir / f"session_{self.session_id}_log.txt"

    @property
    def export_path(self) -> Path:
        return self.export_dir / f"session_{self.session_id}_export.json"

    @property
    def emergency_end_path(self) -> Path:
        return self.session_dir / f"session_{self.session_id}_emergency_end.json"

    def backup_prefix(self, kind: str = "backup") -> str:
        return f"session_{self.session_id}_{kind}_"

    def device_file_path(self, device_id: str) -> Path:
        name = sanitize_identifier(device_id) or "unknown"
        if f"{name}.json" == CONSOLIDATED_FILE:
            name = f"device_{name}"
        return self.sensor_data_dir / f"{name}.json"


@dataclass
class PendingEntry:
    timestamp: str
    topic: str
    device_id: str
    payload: Any


@dataclass
class CaptureSession:
    """Estado en memoria de una sesión activa.

    Mutada por el store en cada mensaje capturado (bajo ``lock``) y por el
    controlador al finalizar. ``active`` pasa a False una sola vez.
    """

    session_id: str
    layout: SessionLayout
    device_filters: Sequence[Any]
    start_time: str = field(default_factory=utc_now_iso)
    started_at_ms: int = field(default_factory=now_ms)
    message_count: int = 0
    flushed_count: int = 0
    save_count: int = 0
    last_save_time: int = field(default_factory=now_ms)
    pending: List[PendingEntry] = field(default_factory=list)
    capture_config: Dict[str, Any] = field(default_factory=dict)
    active: bool = True
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def data_file_path(self) -> Path:
        return self.layout.data_file_path

    @property
    def backup_path(self) -> Path:
        return self.layout.named_backup_path

    @property
    def sensor_data_dir(self) -> Path:
        return self.layout.sensor_data_dir

    @property
    def consolidated_data_path(self) -> Path:
        return self.layout.consolidated_data_path

    def devices_payload(self) -> List[dict]:
        return [f.to_dict() if hasattr(f, "to_dict") else f for f in self.device_filters]

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "dataFilePath": str(self.data_file_path),
            "devices": self.devices_payload(),
            "messageCount": self.message_count,
            "pendingCount": len(self.pending),
            "lastSaveTime": self.last_save_time,
            "saveCount": self.save_count,
        }


class ActiveSessions:
    """Conjunto de sesiones activas, indexado por id."""

    def __init__(self):
        self._sessions: Dict[str, CaptureSession] = {}
        self._lock = threading.Lock()

    def add(self, session: CaptureSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[CaptureSession]:
        with self._lock:
            return self._sessions.get(str(session_id))

    def remove(self, session_id: str) -> Optional[CaptureSession]:
        with self._lock:
            return self._sessions.pop(str(session_id), None)

    def snapshot(self) -> List[CaptureSession]:
        with self._lock:
            return list(self._sessions.values())

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return str(session_id) in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def new_primary_record(session: CaptureSession) -> dict:
    return {
        "sessionId": session.session_id,
        "startTime": session.start_time,
        "devices": session.devices_payload(),
        "messages": {},
        "deviceData": {},
        "captureConfig": dict(session.capture_config),
        "stats": {
            "messageCount": 0,
            "lastSaveTime": now_ms(),
            "saveCount": 0,
        },
    }


def message_entry(entry: PendingEntry) -> dict:
    return {
        "timestamp": entry.timestamp,
        "topic": entry.topic,
        "device": entry.device_id,
        "payload": entry.payload,
    }


def device_data_entry(entry: PendingEntry) -> dict:
    return {
        "timestamp": entry.timestamp,
        "topic": entry.topic,
        "payload": entry.payload,
    }


def device_file_entry(entry: PendingEntry) -> dict:
    return {
        "timestamp": entry.timestamp,
        "topic": entry.topic,
        "sensor": entry.device_id,
        "data": entry.payload,
    }


def consolidated_entry(entry: PendingEntry) -> dict:
    record = {
        "timestamp": entry.timestamp,
        "sensor": entry.device_id,
        "topic": entry.topic,
    }
    if isinstance(entry.payload, dict):
        record.update(entry.payload)
    else:
        record["value"] = entry.payload
    return record
