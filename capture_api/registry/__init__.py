from .devices import Device, DeviceDirectory, resolve_device_id, sanitize_identifier
from .topics import TopicRegistry
from .snapshot import RegistrySnapshot

__all__ = [
    "Device",
    "DeviceDirectory",
    "resolve_device_id",
    "sanitize_identifier",
    "TopicRegistry",
    "RegistrySnapshot",
]
