"""Métricas y health del servicio de captura."""

from . import metrics
from .health import HealthChecker, HealthStatus

__all__ = ["metrics", "HealthChecker", "HealthStatus"]
