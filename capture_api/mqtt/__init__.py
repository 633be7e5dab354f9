"""Conexión MQTT del servicio de captura.

Estructura modular:
- broker_config.py: candidatos, política de reconexión y estados
- channel.py: canal acotado entre el hilo de paho y el consumidor
- connection.py: gestor de la conexión al broker
- message_handler.py: procesamiento de cada mensaje entrante
- receiver_stats.py: contadores del consumidor
"""

from .broker_config import BrokerCandidate, ConnectionPhase, ConnectionState, ReconnectPolicy, build_candidates
from .channel import ChannelConfig, InboundMessage, MessageChannel
from .connection import BrokerConnectionManager
from .message_handler import MessageConsumer, MessageHandler, parse_payload
from .receiver_stats import ReceiverStats

__all__ = [
    "BrokerCandidate",
    "ConnectionPhase",
    "ConnectionState",
    "ReconnectPolicy",
    "build_candidates",
    "ChannelConfig",
    "InboundMessage",
    "MessageChannel",
    "BrokerConnectionManager",
    "MessageConsumer",
    "MessageHandler",
    "parse_payload",
    "ReceiverStats",
]
