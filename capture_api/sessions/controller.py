"""Session Lifecycle Controller.

Transiciones ``Unregistered -> Active -> Finalized`` de una sesión de
captura. Es dueño del conjunto de sesiones activas y de la tarea de backup
periódico de cada una.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import orjson

from ..monitoring import metrics
from ..registry.devices import DeviceDirectory
from ..routing.models import ALL_SENSORS_ID, DeviceFilter, catch_all_filter, parse_filters
from ..storage.atomic import READ_ERRORS, WRITE_ERRORS, atomic_write_json
from ..storage.backups import KIND_PERIODIC, BackupManager
from ..storage.models import (
    ActiveSessions,
    CaptureSession,
    SessionLayout,
    new_primary_record,
    now_ms,
    utc_now_iso,
)
from ..storage.session_store import DurableSessionStore
from .scheduler import RecurringTask

logger = logging.getLogger(__name__)

FINALIZE_ERRORS = READ_ERRORS + WRITE_ERRORS


class SessionLifecycleController:
    def __init__(
        self,
        sessions: ActiveSessions,
        store: DurableSessionStore,
        backups: BackupManager,
        directory: DeviceDirectory,
        *,
        sessions_dir: Path = Path("sessions"),
        base_topic: str = "zigbee2mqtt",
        backup_interval: float = 30.0,
        broker_url_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        self._sessions = sessions
        self._store = store
        self._backups = backups
        self._directory = directory
        self.sessions_dir = Path(sessions_dir)
        self.base_topic = base_topic
        self.backup_interval = backup_interval
        self._broker_url_provider = broker_url_provider or (lambda: None)
        self._tasks: Dict[str, RecurringTask] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def resolve_filters(self, filters: List[DeviceFilter]) -> List[DeviceFilter]:
        """Sin selección explícita: todos los dispositivos conocidos, o catch-all si no hay."""
        if filters:
            return filters

        known = [d for d in self._directory.devices() if not d.is_coordinator]
        if not known:
            logger.info("[SESSION] No device list available, capturing every message")
            return [catch_all_filter(self.base_topic)]

        logger.info("[SESSION] Using %d known devices", len(known))
        return [DeviceFilter(id=d.id, name=d.friendly_name, topic=d.topic) for d in known]

    def start(self, session_id: Any, data_file_path: Any, devices: Optional[Iterable[Any]] = None) -> bool:
        """Registra la sesión y crea sus artefactos iniciales.

        Returns:
            False si la sesión ya estaba activa o no se pudo crear ni el directorio principal
        """
        session_id = str(session_id)
        if session_id in self._sessions:
            logger.warning("[SESSION] Session %s is already active", session_id)
            return False

        filters = self.resolve_filters(parse_filters(devices))
        layout = SessionLayout.resolve(self.sessions_dir, session_id, data_file_path)
        if not self._create_directories(layout):
            return False

        session = CaptureSession(
            session_id=session_id,
            layout=layout,
            device_filters=filters,
            capture_config={
                "brokerUrl": self._broker_url_provider(),
                "baseTopic": self.base_topic,
                "captureAllTopics": any(f.id == ALL_SENSORS_ID for f in filters),
            },
        )
        # Visible al router sólo con los archivos iniciales ya escritos
        self._write_initial_files(session)
        self._sessions.add(session)
        metrics.ACTIVE_SESSIONS.set(len(self._sessions))
        logger.info("[SESSION] Session %s registered with %d filters", session_id, len(filters))

        task = RecurringTask(
            f"session-{session_id}-backup",
            self.backup_interval,
            lambda: self.backup(session_id),
        )
        with self._lock:
            self._tasks[session_id] = task
        task.start()
        return True

    def _create_directories(self, layout: SessionLayout) -> bool:
        try:
            for directory in (layout.session_dir, layout.backup_dir, layout.sensor_data_dir, layout.logs_dir):
                directory.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error("[SESSION] Could not create directory structure for %s: %s", layout.session_dir, e)

        # El resto de directorios se crean bajo demanda
        try:
            layout.session_dir.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error("[SESSION] Could not create session directory %s: %s", layout.session_dir, e)
            return False

    def _write_initial_files(self, session: CaptureSession) -> None:
        # Un fallo aquí no cancela la sesión: el store reconstruye los archivos en el primer mensaje
        record = new_primary_record(session)
        try:
            atomic_write_json(session.data_file_path, record)
            atomic_write_json(session.backup_path, record)
            atomic_write_json(session.consolidated_data_path, [])
        except WRITE_ERRORS as e:
            logger.error("[SESSION] Could not initialize data files for session %s: %s", session.session_id, e)

        self._append_log(session, [
            f"Session {session.session_id} started",
            f"Configuration: {orjson.dumps(record['captureConfig']).decode()}",
            f"Registered devices: {len(session.device_filters)}",
        ])

    # ------------------------------------------------------------------
    # backups
    # ------------------------------------------------------------------

    def backup(self, session_id: Any) -> bool:
        """Backup del archivo principal. False si la sesión ya no está activa."""
        session = self._sessions.get(str(session_id))
        if session is None:
            return False
        with session.lock:
            if not session.active:
                return False
            self._backups.create_backup(session, kind=KIND_PERIODIC)
        return True

    # ------------------------------------------------------------------
    # end
    # ------------------------------------------------------------------

    def end(self, session_id: Any) -> bool:
        """Finaliza la sesión. Siempre la quita del conjunto activo.

        Returns:
            True si el archivo principal quedó cerrado; False si la sesión no
            existía o hubo que escribir el archivo de emergencia
        """
        session_id = str(session_id)
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("[SESSION] Session %s not found", session_id)
            return False

        with self._lock:
            task = self._tasks.pop(session_id, None)
        if task is not None:
            task.cancel()

        end_time = utc_now_iso()
        duration = now_ms() - session.started_at_ms
        ok = True

        with session.lock:
            if not session.active:
                logger.warning("[SESSION] Session %s is already being finalized", session_id)
                return False
            session.active = False
            try:
                self._backups.create_final_backup(session)
                sensor_files = self._store.count_device_files(session)
                stats = self._store.finalize_primary(session, end_time, duration, sensor_files)
                logger.info(
                    "[SESSION] Session %s finalized: %d messages, %d sensors, %d topics",
                    session_id, stats["messageCount"], stats["sensorCount"], stats["topicCount"],
                )
                self._append_log(session, [
                    f"Session {session_id} finished",
                    f"Duration: {round(duration / 1000)} seconds",
                    f"Data saved to: {session.data_file_path}",
                ])
            except FINALIZE_ERRORS as e:
                ok = False
                logger.error("[SESSION] Could not finalize primary file for session %s: %s", session_id, e)
                self._write_emergency(session, end_time, duration, e)
            finally:
                self._sessions.remove(session_id)
                self._backups.forget(session_id)
                metrics.ACTIVE_SESSIONS.set(len(self._sessions))
                # El resumen no depende del archivo principal
                self._write_export(session, end_time, duration)

        return ok

    def end_all(self) -> Dict[str, bool]:
        return {session_id: self.end(session_id) for session_id in self._sessions.ids()}

    def _write_export(self, session: CaptureSession, end_time: str, duration: int) -> None:
        summary = {
            "sessionId": session.session_id,
            "startTime": session.start_time,
            "endTime": end_time,
            "duration": duration,
            "sensorCount": len(session.device_filters),
            "exportTime": utc_now_iso(),
        }
        try:
            session.layout.export_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(session.layout.export_path, summary)
        except WRITE_ERRORS as e:
            logger.warning("[SESSION] Could not write export summary for session %s: %s", session.session_id, e)

    def _write_emergency(self, session: CaptureSession, end_time: str, duration: int, error: BaseException) -> None:
        path = session.layout.emergency_end_path
        record = {
            "sessionId": session.session_id,
            "startTime": session.start_time,
            "endTime": end_time,
            "duration": duration,
            "error": f"Emergency finalization after error: {error}",
            "timestamp": utc_now_iso(),
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, record)
            logger.warning("[SESSION] Emergency record written: %s", path)
        except WRITE_ERRORS as e:
            logger.error("[SESSION] Could not write emergency record for session %s: %s", session.session_id, e)

    @staticmethod
    def _append_log(session: CaptureSession, lines: List[str]) -> None:
        stamp = utc_now_iso()
        try:
            with open(session.layout.log_path, "a", encoding="utf-8") as fh:
                for line in lines:
                    fh.write(f"[{stamp}] {line}\n")
        except OSError as e:
            logger.warning("[SESSION] Could not write session log %s: %s", session.layout.log_path, e)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get(self, session_id: Any) -> Optional[CaptureSession]:
        return self._sessions.get(str(session_id))

    def active_sessions(self) -> List[dict]:
        return [session.to_dict() for session in self._sessions.snapshot()]

    def is_active(self, session_id: Any) -> bool:
        return str(session_id) in self._sessions

    def close(self) -> None:
        """Cancela los backups periódicos y vuelca lo pendiente, sin finalizar sesiones."""
        with self._lock:
            tasks, self._tasks = self._tasks, {}
        for task in tasks.values():
            task.cancel()
        for session in self._sessions.snapshot():
            self._store.flush(session)
