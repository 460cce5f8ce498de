"""Statistics for a device MQTT adapter."""

from __future__ import annotations


class AdapterStats:
    """Estadísticas del adapter MQTT de un dispositivo."""

    def __init__(self):
        self.received = 0
        self.forwarded = 0
        self.decode_errors = 0
        self.sink_failures = 0
        self.dropped = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} forwarded={self.forwarded} "
            f"decode_errors={self.decode_errors} dropped={self.dropped}"
        )

    def to_dict(self) -> dict:
        """Convert stats to dictionary."""
        return {
            "received": self.received,
            "forwarded": self.forwarded,
            "decode_errors": self.decode_errors,
            "sink_failures": self.sink_failures,
            "dropped": self.dropped,
            "last_message_at": self.last_message_at,
        }
