"""Health checks del servicio de captura."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class HealthStatus:
    """Estado de salud del servicio.

    Sin broker el servicio sigue sano pero degradado: no captura datos.
    """
    healthy: bool
    degraded: bool
    mqtt_connected: bool
    connection_phase: str
    sessions_dir_writable: bool
    active_sessions: int
    messages_processed: int
    messages_failed: int

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "degraded": self.degraded,
            "mqtt_connected": self.mqtt_connected,
            "connection_phase": self.connection_phase,
            "sessions_dir_writable": self.sessions_dir_writable,
            "active_sessions": self.active_sessions,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
        }


class HealthChecker:
    def __init__(self, sessions_dir: Path):
        self._sessions_dir = Path(sessions_dir)

    def check_sessions_dir(self) -> bool:
        """El directorio (o su primer ancestro existente) admite escritura."""
        path = self._sessions_dir.resolve()
        while not path.exists() and path != path.parent:
            path = path.parent
        return os.access(path, os.W_OK)

    def get_status(
        self,
        mqtt_connected: bool,
        connection_phase: str,
        active_sessions: int,
        processed: int,
        failed: int,
    ) -> HealthStatus:
        writable = self.check_sessions_dir()
        return HealthStatus(
            healthy=writable,
            degraded=not mqtt_connected,
            mqtt_connected=mqtt_connected,
            connection_phase=connection_phase,
            sessions_dir_writable=writable,
            active_sessions=active_sessions,
            messages_processed=processed,
            messages_failed=failed,
        )
