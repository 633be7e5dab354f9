"""Endpoints de diagnóstico del servicio de captura.

Sólo lectura: estado de conexión, estadísticas, dispositivos y tópicos
observados, y las métricas Prometheus. La gestión de sesiones queda en la
capa web que embebe este router.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..service import CaptureService

router = APIRouter(tags=["capture"])


def _service(request: Request) -> CaptureService:
    service = getattr(request.app.state, "capture_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Capture service not initialized")
    return service


@router.get("/capture/health")
def capture_health(request: Request):
    """Estado de salud.

    Example response:
    ```json
    {
        "healthy": true,
        "degraded": true,
        "mqtt_connected": false,
        "connection_phase": "exhausted",
        "sessions_dir_writable": true,
        "active_sessions": 0,
        "messages_processed": 0,
        "messages_failed": 0
    }
    ```
    """
    return _service(request).health_check()


@router.get("/capture/stats")
def capture_stats(request: Request):
    return _service(request).stats


@router.get("/capture/connection")
def capture_connection(request: Request):
    return _service(request).get_connection_state()


@router.get("/capture/devices")
def capture_devices(request: Request):
    return [device.to_dict() for device in _service(request).get_devices_list()]


@router.get("/capture/topics")
def capture_topics(request: Request):
    return _service(request).get_topics()


@router.get("/capture/history")
def capture_history(request: Request, topic: str = Query(..., description="Exact MQTT topic")):
    """Últimos mensajes recibidos en ``topic`` (máximo 20)."""
    return _service(request).get_message_history(topic)


@router.get("/capture/sessions")
def capture_sessions(request: Request):
    return _service(request).active_sessions()


@router.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
