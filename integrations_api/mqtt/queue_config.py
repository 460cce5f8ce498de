"""Configuración de la cola acotada de cada adapter MQTT."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class QueueConfig:
    """Configuración de backpressure del adapter."""
    max_queue_size: int = 1000
    drop_oldest: bool = True  # True = drop oldest, False = drop newest

    @classmethod
    def from_env(cls) -> "QueueConfig":
        return cls(
            max_queue_size=int(os.getenv("MQTT_QUEUE_MAX_SIZE", "1000")),
            drop_oldest=os.getenv("MQTT_DROP_OLDEST", "true").lower() == "true",
        )
