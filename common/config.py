from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


DEFAULT_BROKER_URLS = "mqtt://localhost:1883,ws://localhost:9001"


def _default_env_file() -> str:
    # The service is usually launched from the deployment root, next to its .env.
    return str(Path.cwd() / ".env")


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    broker_urls: List[str]
    injected_broker_url: Optional[str]
    base_topic: str
    extra_topics: List[str]
    username: Optional[str]
    password: Optional[str]
    client_id: str

    connect_timeout: float
    keepalive: int
    device_list_delay: float

    data_dir: Path
    sessions_dir: Path
    backup_interval: float
    max_backups: int

    topics_save_interval: float = 300.0
    log_level: str = "INFO"
    env_file: Optional[str] = field(default=None, compare=False)


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("CAPTURE_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    broker_urls = _split_csv(os.getenv("MQTT_BROKER_URLS", DEFAULT_BROKER_URLS))
    injected = os.getenv("MQTT_BROKER_URL") or None

    return Settings(
        broker_urls=broker_urls,
        injected_broker_url=injected,
        base_topic=os.getenv("MQTT_BASE_TOPIC", "zigbee2mqtt").strip("/") or "zigbee2mqtt",
        extra_topics=_split_csv(os.getenv("MQTT_EXTRA_TOPICS")),
        username=os.getenv("MQTT_USERNAME") or None,
        password=os.getenv("MQTT_PASSWORD") or None,
        client_id=os.getenv("MQTT_CLIENT_ID", "capture_server"),
        connect_timeout=float(os.getenv("MQTT_CONNECT_TIMEOUT", "5")),
        keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
        device_list_delay=float(os.getenv("MQTT_DEVICE_LIST_DELAY", "1")),
        data_dir=Path(os.getenv("CAPTURE_DATA_DIR", "data")),
        sessions_dir=Path(os.getenv("CAPTURE_SESSIONS_DIR", "sessions")),
        backup_interval=float(os.getenv("CAPTURE_BACKUP_INTERVAL", "30")),
        max_backups=int(os.getenv("CAPTURE_MAX_BACKUPS", "5")),
        topics_save_interval=float(os.getenv("CAPTURE_TOPICS_SAVE_INTERVAL", "300")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        env_file=env_file,
    )
