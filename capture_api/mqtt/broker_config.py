"""Configuración y modelos del gestor de conexión MQTT.

Candidatos de broker, política de reconexión y estados de conexión.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse


# scheme -> (transport, tls, puerto por defecto)
_SCHEMES = {
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


class InvalidBrokerUrl(ValueError):
    """URL de broker con scheme o host no soportado."""


@dataclass(frozen=True)
class BrokerCandidate:
    """Endpoint de broker con su prioridad (0 = más prioritario)."""
    url: str
    priority: int

    def endpoint(self) -> Tuple[str, int, str, bool, str]:
        """Descompone la URL en (host, port, transport, tls, ws_path)."""
        parsed = urlparse(self.url)
        scheme = (parsed.scheme or "mqtt").lower()
        if scheme not in _SCHEMES:
            raise InvalidBrokerUrl(f"Unsupported broker scheme: {self.url}")
        if not parsed.hostname:
            raise InvalidBrokerUrl(f"Broker URL without host: {self.url}")

        transport, tls, default_port = _SCHEMES[scheme]
        port = parsed.port or default_port
        ws_path = parsed.path or "/"
        return parsed.hostname, port, transport, tls, ws_path


def build_candidates(
    urls: Iterable[str],
    injected_url: Optional[str] = None,
) -> List[BrokerCandidate]:
    """Lista ordenada y sin duplicados, con la URL inyectada al frente.

    El orden de inserción es estable; una URL repetida conserva su primera
    posición.
    """
    ordered: List[str] = []
    if injected_url:
        ordered.append(injected_url.strip())
    ordered.extend(url.strip() for url in urls)

    seen = set()
    candidates: List[BrokerCandidate] = []
    for url in ordered:
        if not url or url in seen:
            continue
        seen.add(url)
        candidates.append(BrokerCandidate(url=url, priority=len(candidates)))
    return candidates


@dataclass
class ReconnectPolicy:
    """Backoff exponencial con tope de intentos para caídas post-conexión."""
    base_delay: float = 5.0  # segundos
    multiplier: float = 1.5
    max_delay: float = 60.0  # segundos
    max_attempts: int = 5

    def calculate_delay(self, attempt: int) -> float:
        """Delay antes del intento ``attempt`` (1-indexed)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay))

    @classmethod
    def from_env(cls) -> "ReconnectPolicy":
        return cls(
            base_delay=float(os.getenv("MQTT_RECONNECT_BASE_DELAY", "5")),
            multiplier=float(os.getenv("MQTT_RECONNECT_MULTIPLIER", "1.5")),
            max_delay=float(os.getenv("MQTT_RECONNECT_MAX_DELAY", "60")),
            max_attempts=int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "5")),
        )


class ConnectionPhase(str, Enum):
    """Fases del gestor de conexión."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.IDLE
    candidate_index: Optional[int] = None
    attempt: Optional[int] = None

    @classmethod
    def idle(cls) -> "ConnectionState":
        return cls(ConnectionPhase.IDLE)

    @classmethod
    def connecting(cls, candidate_index: int) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTING, candidate_index=candidate_index)

    @classmethod
    def connected(cls, candidate_index: Optional[int] = None) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTED, candidate_index=candidate_index)

    @classmethod
    def reconnecting(cls, attempt: int) -> "ConnectionState":
        return cls(ConnectionPhase.RECONNECTING, attempt=attempt)

    @classmethod
    def exhausted(cls) -> "ConnectionState":
        return cls(ConnectionPhase.EXHAUSTED)

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "candidate_index": self.candidate_index,
            "attempt": self.attempt,
        }
