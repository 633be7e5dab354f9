"""Persistencia del registro entre reinicios.

Guarda los tópicos observados y la última lista cruda de dispositivos en
``<data_dir>/mqtt-topics.json`` y ``<data_dir>/zigbee_devices.json``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List

from ..storage.atomic import READ_ERRORS, WRITE_ERRORS, atomic_write_json, read_json
from .devices import DeviceDirectory
from .topics import TopicRegistry

logger = logging.getLogger(__name__)

TOPICS_FILE = "mqtt-topics.json"
DEVICES_FILE = "zigbee_devices.json"


class RegistrySnapshot:
    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    @property
    def topics_path(self) -> Path:
        return self.data_dir / TOPICS_FILE

    @property
    def devices_path(self) -> Path:
        return self.data_dir / DEVICES_FILE

    def save_devices(self, raw_devices: List[Any]) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.devices_path, raw_devices)
            logger.info("[REGISTRY] Saved %d devices to %s", len(raw_devices), self.devices_path)
            return True
        except WRITE_ERRORS as e:
            logger.error("[REGISTRY] Failed to save devices list: %s", e)
            return False

    def save_topics(self, topics: List[str]) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.topics_path, topics)
            return True
        except WRITE_ERRORS as e:
            logger.error("[REGISTRY] Failed to save topics: %s", e)
            return False

    def load_into(self, registry: TopicRegistry, directory: DeviceDirectory) -> None:
        """Restaura lo que exista; un archivo corrupto se registra y se ignora."""
        if self.topics_path.exists():
            try:
                topics = read_json(self.topics_path)
                if isinstance(topics, list):
                    added = registry.load_topics(topics)
                    logger.info("[REGISTRY] Loaded %d topics from cache", added)
            except READ_ERRORS as e:
                logger.warning("[REGISTRY] Could not load %s: %s", self.topics_path, e)

        if self.devices_path.exists():
            try:
                directory.update_device_list(read_json(self.devices_path))
            except READ_ERRORS as e:
                logger.warning("[REGISTRY] Could not load %s: %s", self.devices_path, e)
