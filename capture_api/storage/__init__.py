"""Persistencia de sesiones de captura.

- atomic.py: escritura JSON atómica (temp + rename) y locks por archivo
- models.py: sesión en memoria, rutas y formato de registros
- backups.py: snapshots rotados del archivo principal
- session_store.py: escritura en tres niveles por mensaje capturado
"""

from .atomic import atomic_write_json, copy_file, file_lock, read_json
from .models import ActiveSessions, CaptureSession, SessionLayout
from .backups import BackupManager
from .session_store import CRITICAL_FIELDS, DurableSessionStore, PersistOutcome, StoreConfig

__all__ = [
    "atomic_write_json",
    "copy_file",
    "file_lock",
    "read_json",
    "ActiveSessions",
    "CaptureSession",
    "SessionLayout",
    "BackupManager",
    "CRITICAL_FIELDS",
    "DurableSessionStore",
    "PersistOutcome",
    "StoreConfig",
]
