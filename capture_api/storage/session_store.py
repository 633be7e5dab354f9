"""Durable Session Store.

Persiste cada mensaje capturado en tres niveles independientes:

- Tier 1: archivo principal consolidado, por lotes (cada N mensajes o tras
  un intervalo). Si no se puede leer se restaura desde el backup nombrado
  y, si también falla, se reinicializa (pérdida registrada).
- Tier 2: un archivo por dispositivo, en cada mensaje, acotado.
- Tier 3: archivo plano para visualización, en cada mensaje, acotado.

El fallo de un nivel se registra y no impide intentar los demás; nada se
propaga al router.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from ..monitoring import metrics
from .atomic import READ_ERRORS, WRITE_ERRORS, atomic_write_json, file_lock, read_json
from .backups import KIND_CRITICAL, BackupManager
from .models import (
    CONSOLIDATED_FILE,
    ActiveSessions,
    CaptureSession,
    PendingEntry,
    consolidated_entry,
    device_data_entry,
    device_file_entry,
    message_entry,
    new_primary_record,
    now_ms,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Campos que disparan un backup inmediato
CRITICAL_FIELDS = (
    "temperature",
    "humidity",
    "occupancy",
    "presence",
    "illuminance",
    "contact",
    "battery",
)

TIER_PRIMARY = "primary"
TIER_DEVICE = "device"
TIER_CONSOLIDATED = "consolidated"

EMERGENCY_PREFIX = "emergency_messages_"


class PersistOutcome(str, Enum):
    COMMITTED = "committed"  # todos los niveles intentados tuvieron éxito
    DEGRADED = "degraded"    # al menos un nivel falló
    SKIPPED = "skipped"      # la sesión no está activa


@dataclass
class StoreConfig:
    """Configuración de lotes y límites de retención."""
    flush_every: int = 3
    flush_interval: float = 5.0
    device_data_cap: int = 5000
    device_file_cap: int = 10000
    consolidated_cap: int = 20000
    max_pending: int = 10000

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            flush_every=int(os.getenv("CAPTURE_FLUSH_EVERY", "3")),
            flush_interval=float(os.getenv("CAPTURE_FLUSH_INTERVAL", "5")),
            device_data_cap=int(os.getenv("CAPTURE_DEVICE_DATA_CAP", "5000")),
            device_file_cap=int(os.getenv("CAPTURE_DEVICE_FILE_CAP", "10000")),
            consolidated_cap=int(os.getenv("CAPTURE_CONSOLIDATED_CAP", "20000")),
            max_pending=int(os.getenv("CAPTURE_MAX_PENDING", "10000")),
        )


def has_critical_data(payload: Any) -> bool:
    return isinstance(payload, dict) and any(name in payload for name in CRITICAL_FIELDS)


def _cap(items: list, limit: int) -> None:
    if len(items) > limit:
        del items[:-limit]


class DurableSessionStore:
    def __init__(
        self,
        sessions: ActiveSessions,
        backups: BackupManager,
        config: Optional[StoreConfig] = None,
    ):
        self._sessions = sessions
        self._backups = backups
        self.config = config or StoreConfig.from_env()
        self._committed = 0
        self._degraded = 0

    def persist(
        self,
        session_id: str,
        topic: str,
        device_id: str,
        payload: Any,
        timestamp: Optional[str] = None,
    ) -> PersistOutcome:
        """Escribe un mensaje capturado en los tres niveles de la sesión."""
        session = self._sessions.get(session_id)
        if session is None:
            return PersistOutcome.SKIPPED

        entry = PendingEntry(
            timestamp=timestamp or utc_now_iso(),
            topic=topic,
            device_id=device_id,
            payload=payload,
        )

        with session.lock:
            if not session.active:
                return PersistOutcome.SKIPPED

            session.message_count += 1
            session.pending.append(entry)
            if len(session.pending) > self.config.max_pending:
                dropped = len(session.pending) - self.config.max_pending
                del session.pending[:dropped]
                logger.warning(
                    "[STORE] Session %s: %d unflushed messages dropped from the primary batch",
                    session.session_id, dropped,
                )

            ok = True
            if self._should_flush(session):
                ok = self.flush(session) and ok

            self._ensure_sensor_dir(session)
            ok = self._append_to_array(
                session.layout.device_file_path(device_id),
                device_file_entry(entry),
                self.config.device_file_cap,
                TIER_DEVICE,
            ) and ok
            ok = self._append_to_array(
                session.consolidated_data_path,
                consolidated_entry(entry),
                self.config.consolidated_cap,
                TIER_CONSOLIDATED,
            ) and ok

            if has_critical_data(payload):
                self._backups.create_backup(session, kind=KIND_CRITICAL)

        outcome = PersistOutcome.COMMITTED if ok else PersistOutcome.DEGRADED
        if ok:
            self._committed += 1
        else:
            self._degraded += 1
        metrics.MESSAGES_CAPTURED.labels(outcome=outcome.value).inc()
        return outcome

    def _should_flush(self, session: CaptureSession) -> bool:
        if session.message_count % self.config.flush_every == 0:
            return True
        return now_ms() - session.last_save_time > self.config.flush_interval * 1000

    # ------------------------------------------------------------------
    # Tier 1
    # ------------------------------------------------------------------

    def flush(self, session: CaptureSession) -> bool:
        """Agrega todas las entradas pendientes al archivo principal.

        Si la escritura falla las entradas quedan pendientes para el siguiente
        intento.
        """
        with session.lock:
            if not session.pending:
                return True

            path = session.data_file_path
            appended = len(session.pending)
            try:
                with file_lock(path):
                    record = self._load_primary(session)
                    self._merge_pending(record, session.pending)
                    stats = record.get("stats") if isinstance(record.get("stats"), dict) else {}
                    stats["messageCount"] = session.flushed_count + appended
                    stats["lastSaveTime"] = now_ms()
                    stats["saveCount"] = session.save_count + 1
                    record["stats"] = stats
                    atomic_write_json(path, record)
            except WRITE_ERRORS as e:
                metrics.TIER_FAILURES.labels(tier=TIER_PRIMARY).inc()
                logger.error("[STORE] Failed to update primary file for session %s: %s", session.session_id, e)
                return False

            session.flushed_count += appended
            session.save_count += 1
            session.last_save_time = now_ms()
            session.pending.clear()
            logger.debug(
                "[STORE] Primary file updated for session %s, total messages: %d",
                session.session_id, session.flushed_count,
            )
            return True

    def _load_primary(self, session: CaptureSession) -> dict:
        path = session.data_file_path
        try:
            record = read_json(path)
            if isinstance(record, dict):
                return record
            raise ValueError("primary file does not hold an object")
        except READ_ERRORS as e:
            logger.error("[STORE] Could not read primary file %s, restoring from backup: %s", path, e)

        try:
            record = read_json(session.backup_path)
            if isinstance(record, dict):
                logger.info("[STORE] Primary file for session %s restored from %s", session.session_id, session.backup_path)
                return record
            logger.warning("[STORE] Backup %s does not hold an object", session.backup_path)
        except READ_ERRORS as e:
            logger.warning("[STORE] Backup %s unusable: %s", session.backup_path, e)

        logger.warning("[STORE] Reinitializing primary file for session %s, previous data lost", session.session_id)
        return new_primary_record(session)

    def _merge_pending(self, record: dict, pending: List[PendingEntry]) -> None:
        messages = record.get("messages")
        if not isinstance(messages, dict):
            messages = record["messages"] = {}
        device_data = record.get("deviceData")
        if not isinstance(device_data, dict):
            device_data = record["deviceData"] = {}

        touched = set()
        for entry in pending:
            # messages[topic] no tiene límite
            messages.setdefault(entry.topic, []).append(message_entry(entry))
            device_data.setdefault(entry.device_id, []).append(device_data_entry(entry))
            touched.add(entry.device_id)

        for device_id in touched:
            _cap(device_data[device_id], self.config.device_data_cap)

    def finalize_primary(
        self,
        session: CaptureSession,
        end_time: str,
        duration_ms: int,
        sensor_files_count: int,
    ) -> dict:
        """Cierra el archivo principal, fusionando lo pendiente.

        A diferencia de ``flush`` no restaura ni reinicializa: cualquier error
        de lectura o escritura se propaga al controlador.
        """
        path = session.data_file_path
        with session.lock, file_lock(path):
            record = read_json(path)
            if not isinstance(record, dict):
                raise ValueError(f"{path} does not hold an object")

            appended = len(session.pending)
            self._merge_pending(record, session.pending)

            record["endTime"] = end_time
            record["duration"] = duration_ms
            record["status"] = "completed"

            stats = record.get("stats") if isinstance(record.get("stats"), dict) else {}
            stats.update(
                messageCount=session.flushed_count + appended,
                lastSaveTime=now_ms(),
                saveCount=session.save_count + 1,
                endTime=end_time,
                duration=duration_ms,
                sensorCount=len(record["deviceData"]),
                topicCount=len(record["messages"]),
                sensorFilesCount=sensor_files_count,
            )
            record["stats"] = stats
            atomic_write_json(path, record)

            session.flushed_count += appended
            session.save_count += 1
            session.pending.clear()
            return stats

    # ------------------------------------------------------------------
    # Tiers 2 y 3
    # ------------------------------------------------------------------

    def _ensure_sensor_dir(self, session: CaptureSession) -> None:
        try:
            session.sensor_data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("[STORE] Could not create %s: %s", session.sensor_data_dir, e)

    def _append_to_array(self, path: Path, item: dict, limit: int, tier: str) -> bool:
        try:
            with file_lock(path):
                items = self._load_array(path)
                items.append(item)
                _cap(items, limit)
                atomic_write_json(path, items)
            return True
        except WRITE_ERRORS as e:
            metrics.TIER_FAILURES.labels(tier=tier).inc()
            logger.error("[STORE] Failed to update %s file %s: %s", tier, path, e)
            return False

    @staticmethod
    def _load_array(path: Path) -> list:
        if not path.exists():
            return []
        try:
            items = read_json(path)
        except READ_ERRORS as e:
            logger.warning("[STORE] Could not read %s, starting a new file: %s", path, e)
            return []
        if not isinstance(items, list):
            logger.warning("[STORE] %s does not hold an array, starting a new file", path)
            return []
        return items

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def emergency_dump(self, session: CaptureSession, topic: str, payload: Any, error: BaseException) -> Optional[Path]:
        """Guarda el mensaje en un archivo aparte cuando su procesamiento falló."""
        record = {
            "timestamp": utc_now_iso(),
            "topic": topic,
            "message": payload,
            "error": f"Emergency save after processing error: {error}",
        }
        try:
            session.sensor_data_dir.mkdir(parents=True, exist_ok=True)
            stamp = now_ms()
            path = session.sensor_data_dir / f"{EMERGENCY_PREFIX}{stamp}.json"
            while path.exists():
                stamp += 1
                path = session.sensor_data_dir / f"{EMERGENCY_PREFIX}{stamp}.json"
            atomic_write_json(path, record)
        except WRITE_ERRORS as e:
            logger.error("[STORE] Emergency save failed for session %s: %s", session.session_id, e)
            return None
        logger.warning("[STORE] Message on %s saved to %s", topic, path)
        return path

    @staticmethod
    def count_device_files(session: CaptureSession) -> int:
        try:
            names = os.listdir(session.sensor_data_dir)
        except OSError as e:
            logger.warning("[STORE] Could not list %s: %s", session.sensor_data_dir, e)
            return 0
        return sum(
            1 for name in names
            if name.endswith(".json") and name != CONSOLIDATED_FILE and not name.startswith(EMERGENCY_PREFIX)
        )

    @property
    def stats(self) -> dict:
        return {
            "committed": self._committed,
            "degraded": self._degraded,
            "flush_every": self.config.flush_every,
            "flush_interval": self.config.flush_interval,
        }
