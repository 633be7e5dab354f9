"""Snapshots del archivo principal de una sesión.

Cada backup es una copia literal del archivo principal (que sólo se
reemplaza de forma atómica, así que nunca se copia un estado parcial).
Se conservan los ``max_backups`` más recientes por sesión.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..monitoring import metrics
from .atomic import copy_file
from .models import CaptureSession, now_ms

logger = logging.getLogger(__name__)

KIND_PERIODIC = "periodic"
KIND_CRITICAL = "critical"
KIND_FINAL = "final"


class BackupManager:
    def __init__(self, max_backups: int = 5):
        self.max_backups = max_backups
        self._last_stamp: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._created = 0
        self._failed = 0

    def _next_stamp(self, session_id: str) -> int:
        # Estrictamente creciente por sesión: dos backups en el mismo ms no se pisan
        with self._lock:
            stamp = max(now_ms(), self._last_stamp.get(session_id, 0) + 1)
            self._last_stamp[session_id] = stamp
            return stamp

    def create_backup(self, session: CaptureSession, kind: str = KIND_PERIODIC) -> Optional[Path]:
        """Copia el archivo principal a ``backup/session_<id>_backup_<ms>.json``.

        También refresca el backup nombrado (``session_<id>_data.json``), que
        es la fuente de restauración si el principal resulta ilegible.

        Returns:
            Ruta del backup creado, o None si no había archivo o falló la copia
        """
        layout = session.layout
        source = layout.data_file_path
        if not source.exists():
            logger.debug("[BACKUP] No primary file for session %s, skipping", session.session_id)
            return None

        target = layout.backup_dir / f"{layout.backup_prefix()}{self._next_stamp(session.session_id)}.json"
        try:
            layout.backup_dir.mkdir(parents=True, exist_ok=True)
            copy_file(source, target)
            copy_file(source, layout.named_backup_path)
        except OSError as e:
            self._failed += 1
            logger.error("[BACKUP] Failed to back up session %s: %s", session.session_id, e)
            return None

        self._created += 1
        metrics.BACKUPS_CREATED.labels(kind=kind).inc()
        logger.debug("[BACKUP] %s backup created: %s", kind, target)
        self.rotate(session)
        return target

    def create_final_backup(self, session: CaptureSession) -> Optional[Path]:
        layout = session.layout
        source = layout.data_file_path
        if not source.exists():
            logger.warning("[BACKUP] Primary file missing for session %s, no final backup", session.session_id)
            return None

        target = layout.backup_dir / f"{layout.backup_prefix(KIND_FINAL)}{self._next_stamp(session.session_id)}.json"
        try:
            layout.backup_dir.mkdir(parents=True, exist_ok=True)
            copy_file(source, target)
        except OSError as e:
            self._failed += 1
            logger.error("[BACKUP] Final backup failed for session %s: %s", session.session_id, e)
            return None

        self._created += 1
        metrics.BACKUPS_CREATED.labels(kind=KIND_FINAL).inc()
        logger.info("[BACKUP] Final backup created: %s", target)
        return target

    def list_backups(self, session: CaptureSession) -> List[Path]:
        """Backups rotables de la sesión, del más antiguo al más reciente."""
        layout = session.layout
        prefix = layout.backup_prefix()
        found = []
        try:
            entries = os.listdir(layout.backup_dir)
        except OSError:
            return []
        for name in entries:
            if not (name.startswith(prefix) and name.endswith(".json")):
                continue
            stamp = name[len(prefix):-len(".json")]
            if stamp.isdigit():
                found.append((int(stamp), layout.backup_dir / name))
        found.sort()
        return [path for _, path in found]

    def rotate(self, session: CaptureSession) -> int:
        """Borra los backups más antiguos por encima del límite. Best-effort."""
        backups = self.list_backups(session)
        excess = len(backups) - self.max_backups
        deleted = 0
        for path in backups[:max(excess, 0)]:
            try:
                path.unlink()
                deleted += 1
            except OSError as e:
                logger.warning("[BACKUP] Could not delete old backup %s: %s", path, e)
        return deleted

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._last_stamp.pop(session_id, None)

    @property
    def stats(self) -> dict:
        return {"created": self._created, "failed": self._failed, "max_backups": self.max_backups}
