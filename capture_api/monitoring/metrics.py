"""Métricas Prometheus del servicio de captura."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

MQTT_CONNECTED = Gauge(
    "capture_mqtt_connected",
    "MQTT connection status (1 = connected)",
)
MQTT_CONNECTION_ATTEMPTS = Counter(
    "capture_mqtt_connection_attempts_total",
    "Broker connection attempts",
    ["result"],  # success, failure, timeout
)
MQTT_MESSAGES_RECEIVED = Counter(
    "capture_mqtt_messages_received_total",
    "Messages received from the broker",
)
MESSAGES_CAPTURED = Counter(
    "capture_messages_captured_total",
    "Messages persisted for a capture session",
    ["outcome"],  # committed, degraded
)
TIER_FAILURES = Counter(
    "capture_tier_failures_total",
    "Failed writes per persistence tier",
    ["tier"],  # primary, device, consolidated
)
BACKUPS_CREATED = Counter(
    "capture_backups_total",
    "Session backups written",
    ["kind"],  # periodic, critical, final
)
ACTIVE_SESSIONS = Gauge(
    "capture_active_sessions",
    "Capture sessions currently active",
)
ROUTING_LATENCY = Histogram(
    "capture_routing_seconds",
    "Time spent routing and persisting one inbound message",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
