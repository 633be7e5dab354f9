from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .endpoints import diagnostics_router
from .service import CaptureService


def create_app(service: Optional[CaptureService] = None, manage_lifecycle: bool = True) -> FastAPI:
    """App de diagnóstico para montar junto a la capa web.

    Con ``manage_lifecycle`` el servicio se inicializa al arrancar la app y
    se detiene al cerrarla.
    """
    capture_service = service or CaptureService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            capture_service.init()
        try:
            yield
        finally:
            if manage_lifecycle:
                capture_service.shutdown()

    app = FastAPI(title="Sensor Capture Service", version=__version__, lifespan=lifespan)
    app.state.capture_service = capture_service
    app.include_router(diagnostics_router)
    return app
