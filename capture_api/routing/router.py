"""Message Router.

Para cada mensaje entrante decide qué sesiones activas lo capturan y con
qué identificador de dispositivo, y delega la escritura al store.

Orden de evaluación por sesión (sobre todos sus filtros):
1. catch-all (``all_sensors`` o ``<base>/#``)
2. tópico exacto
3. prefijo con comodín (``<algo>/#``)
4. substring del nombre o id dentro del tópico
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from ..storage.models import ActiveSessions
from ..storage.session_store import DurableSessionStore, PersistOutcome
from .models import WILDCARD_SUFFIX, DeviceFilter

logger = logging.getLogger(__name__)

RULE_CATCH_ALL = "catch_all"
RULE_EXACT = "exact"
RULE_PREFIX = "prefix"
RULE_SUBSTRING = "substring"


@dataclass(frozen=True)
class FilterMatch:
    rule: str
    device_id: str


@dataclass(frozen=True)
class RouteResult:
    session_id: str
    device_id: str
    rule: str
    outcome: PersistOutcome


def match_filters(
    filters: Sequence[DeviceFilter],
    topic: str,
    resolved_id: str,
    base_topic: str,
) -> Optional[FilterMatch]:
    """Evalúa los filtros de una sesión. None si la sesión no captura el mensaje."""
    for f in filters:
        if f.is_catch_all(base_topic):
            return FilterMatch(RULE_CATCH_ALL, resolved_id)

    for f in filters:
        if f.topic and f.topic == topic:
            return FilterMatch(RULE_EXACT, f.device_label or resolved_id)

    for f in filters:
        if f.topic and f.topic.endswith(WILDCARD_SUFFIX):
            prefix = f.topic[: -len(WILDCARD_SUFFIX)]
            if topic.startswith(prefix):
                return FilterMatch(RULE_PREFIX, f.device_label or resolved_id)

    for f in filters:
        for needle in (f.name, f.id):
            if needle and needle in topic:
                return FilterMatch(RULE_SUBSTRING, f.device_label or resolved_id)

    return None


class MessageRouter:
    def __init__(self, sessions: ActiveSessions, store: DurableSessionStore, base_topic: str = "zigbee2mqtt"):
        self._sessions = sessions
        self._store = store
        self.base_topic = base_topic

    def route(self, topic: str, payload: Any, device_id: str) -> List[RouteResult]:
        """Entrega el mensaje a cada sesión activa cuyo filtro coincide.

        Cada sesión se evalúa de forma independiente; un error en una no
        impide procesar las demás.
        """
        results: List[RouteResult] = []
        for session in self._sessions.snapshot():
            try:
                match = match_filters(session.device_filters, topic, device_id, self.base_topic)
                if match is None:
                    continue
                outcome = self._store.persist(session.session_id, topic, match.device_id, payload)
                results.append(RouteResult(session.session_id, match.device_id, match.rule, outcome))
            except Exception as e:
                logger.exception("[ROUTER] Failed to route %s for session %s: %s", topic, session.session_id, e)
                self._store.emergency_dump(session, topic, payload, e)
        return results
