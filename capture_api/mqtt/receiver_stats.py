"""Statistics for the inbound message consumer."""

from __future__ import annotations


class ReceiverStats:
    """Estadísticas del consumidor de mensajes MQTT."""

    def __init__(self):
        self.received = 0
        self.processed = 0
        self.failed = 0
        self.captured = 0
        self.slow = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} processed={self.processed} "
            f"failed={self.failed} captured={self.captured} slow={self.slow}"
        )

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "processed": self.processed,
            "failed": self.failed,
            "captured": self.captured,
            "slow": self.slow,
            "last_message_at": self.last_message_at,
        }
