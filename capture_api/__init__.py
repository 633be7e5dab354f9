"""Sensor capture service.

Mantiene la suscripción al broker MQTT y persiste cada mensaje en las
sesiones de captura activas.

Estructura:
- mqtt/        → Conexión al broker, canal acotado y handler de mensajes
- registry/    → Tópicos observados, historial y directorio de dispositivos
- routing/     → Filtros de dispositivos y router de mensajes
- storage/     → Escritura atómica, store durable por sesión y backups
- sessions/    → Ciclo de vida de las sesiones de captura
- monitoring/  → Métricas Prometheus y health
- endpoints/   → Router FastAPI de diagnóstico (sólo lectura)
"""

__version__ = "0.4.0"
