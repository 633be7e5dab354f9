"""Filtros de dispositivo declarados al iniciar una sesión de captura."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

ALL_SENSORS_ID = "all_sensors"
ALL_SENSORS_NAME = "all_zigbee_sensors"
WILDCARD_SUFFIX = "/#"


class DeviceFilter(BaseModel):
    """Regla de selección de una sesión.

    Formato esperado (lo que envía la capa de sesiones):
    {
        "id": "door1",
        "name": "door1",
        "topic": "zigbee2mqtt/door1",
        "type": "sensor"
    }

    ``topicPattern`` se acepta como alias de ``topic``. Los ids numéricos se
    convierten a string.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    topic: Optional[str] = Field(default=None, validation_alias=AliasChoices("topic", "topicPattern"))
    type: str = "sensor"

    @field_validator("id", "name", "topic", mode="before")
    @classmethod
    def normalize_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError(f"Expected string, got {type(v).__name__}")
        text = str(v).strip()
        return text or None

    @model_validator(mode="after")
    def require_selector(self) -> "DeviceFilter":
        if not (self.id or self.name or self.topic):
            raise ValueError("Filter needs at least one of id, name or topic")
        return self

    @property
    def device_label(self) -> Optional[str]:
        """Identificador que reemplaza al resuelto cuando el filtro coincide."""
        return self.id or self.name

    def is_catch_all(self, base_topic: str) -> bool:
        return self.id == ALL_SENSORS_ID or self.topic in (f"{base_topic}{WILDCARD_SUFFIX}", "#")

    def to_dict(self) -> dict:
        return self.model_dump(exclude_none=True)


def catch_all_filter(base_topic: str) -> DeviceFilter:
    return DeviceFilter(
        id=ALL_SENSORS_ID,
        name=ALL_SENSORS_NAME,
        topic=f"{base_topic}{WILDCARD_SUFFIX}",
    )


def parse_filters(raw: Optional[Iterable[Any]]) -> List[DeviceFilter]:
    """Valida la selección recibida; las entradas inválidas se descartan con warning.

    Acepta instancias de ``DeviceFilter``, dicts o strings (tomados como id).
    """
    filters: List[DeviceFilter] = []
    for item in raw or ():
        if isinstance(item, DeviceFilter):
            filters.append(item)
            continue
        try:
            if isinstance(item, (str, int)) and not isinstance(item, bool):
                filters.append(DeviceFilter(id=item))
            else:
                filters.append(DeviceFilter.model_validate(item))
        except ValidationError as e:
            logger.warning("[ROUTER] Dropping invalid device filter %r: %s", item, e.errors())
    return filters
