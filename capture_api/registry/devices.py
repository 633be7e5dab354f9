"""Directorio de dispositivos descubiertos y resolución de identificadores.

La lista proviene del mensaje ``<base>/bridge/devices`` del puente Zigbee y
se reemplaza completa en cada actualización (snapshot, no merge).
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# Separadores de ruta y caracteres reservados en nombres de archivo
_RESERVED_CHARS = re.compile(r'[/\\:*?"<>|]')

COORDINATOR_TYPE = "Coordinator"


def sanitize_identifier(value: str) -> str:
    return _RESERVED_CHARS.sub("_", value)


def resolve_device_id(topic: str, payload: Any = None, base_topic: str = "zigbee2mqtt") -> str:
    """Identificador del dispositivo dueño de un mensaje.

    Cadena de fallback:
    1. primer segmento tras ``<base_topic>/``
    2. último segmento del tópico
    3. tópico completo con separadores y reservados reemplazados por ``_``

    Función pura: depende sólo de (topic, base_topic). ``payload`` se acepta
    por simetría con el router y no se usa.
    """
    prefix = f"{base_topic}/"
    if topic.startswith(prefix):
        first = topic[len(prefix):].split("/")[0]
        if first:
            return first

    if "/" in topic:
        return topic.rsplit("/", 1)[-1] or "unknown"

    return sanitize_identifier(topic)


@dataclass(frozen=True)
class Device:
    id: str
    friendly_name: str
    topic: str
    type: Optional[str] = None
    last_seen: Any = None

    @classmethod
    def from_descriptor(cls, descriptor: dict, base_topic: str) -> Optional["Device"]:
        """Construye un Device desde un descriptor del puente; None si no tiene identificador."""
        friendly = descriptor.get("friendly_name")
        ieee = descriptor.get("ieee_address")
        ident = friendly or ieee
        if not ident or not isinstance(ident, str):
            return None
        return cls(
            id=ident,
            friendly_name=friendly or ident,
            topic=f"{base_topic}/{ident}",
            type=descriptor.get("type"),
            last_seen=descriptor.get("last_seen"),
        )

    @property
    def is_coordinator(self) -> bool:
        return self.type == COORDINATOR_TYPE

    def to_dict(self) -> dict:
        return asdict(self)


class DeviceDirectory:
    """Snapshot thread-safe de la última lista de dispositivos."""

    def __init__(self, base_topic: str = "zigbee2mqtt"):
        self.base_topic = base_topic
        self._raw: List[Any] = []
        self._devices: List[Device] = []
        self._lock = threading.Lock()
        self._updates = 0

    def update_device_list(self, payload: Any) -> bool:
        """Reemplaza el directorio completo. Payloads que no son lista se ignoran.

        Returns:
            True si el directorio se actualizó
        """
        if not isinstance(payload, list):
            logger.debug("[REGISTRY] Ignoring non-list devices payload (%s)", type(payload).__name__)
            return False

        devices = []
        for descriptor in payload:
            if isinstance(descriptor, dict):
                device = Device.from_descriptor(descriptor, self.base_topic)
                if device is not None:
                    devices.append(device)

        with self._lock:
            self._raw = list(payload)
            self._devices = devices
            self._updates += 1

        logger.info(
            "[REGISTRY] Devices list updated: %d descriptors, %d devices",
            len(payload), len(devices),
        )
        return True

    def resolve_device_id(self, topic: str, payload: Any = None) -> str:
        return resolve_device_id(topic, payload, self.base_topic)

    def devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices)

    def raw_devices(self) -> List[Any]:
        with self._lock:
            return list(self._raw)

    @property
    def devices_topic(self) -> str:
        return f"{self.base_topic}/bridge/devices"

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)
