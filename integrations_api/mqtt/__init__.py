"""Bridge MQTT saliente por dispositivo.

Estructura modular:
- client.py: adapter paho-mqtt (connect / subscribe / forward / disconnect)
- connection_options.py: URL del broker y connectionOptions → parámetros de paho
- decoders.py: decodificación según messageFormat
- queue_config.py: backpressure de la cola del adapter
- stats.py: contadores por adapter
"""

from .client import MQTTClientAdapter, default_client_factory
from .connection_options import BrokerParams, ConnectionOptions, parse_broker_url, parse_connection_options
from .decoders import decode_message
from .queue_config import QueueConfig
from .stats import AdapterStats

__all__ = [
    "MQTTClientAdapter",
    "default_client_factory",
    "BrokerParams",
    "ConnectionOptions",
    "parse_broker_url",
    "parse_connection_options",
    "decode_message",
    "QueueConfig",
    "AdapterStats",
]
