"""Ciclo de vida de conexiones MQTT por dispositivo.

Estructura:
- changes.py: diff de documentos y clasificación del cambio MQTT
- events.py: hooks del storage y eventos explícitos
- registry.py: registro device id → conexión, locks por dispositivo
- coordinator.py: máquina de estados y reconcile
"""

from .changes import MqttChange, MqttChangeReason, changed_paths, classify_mqtt_change, touches_mqtt
from .coordinator import DeviceMqttState, LifecycleCoordinator
from .events import ConfigCommitted, DeviceRemoved, LifecycleEvent, LifecycleHooks
from .registry import ConnectionRegistry, ConnectionState, RegistryEntry

__all__ = [
    "MqttChange",
    "MqttChangeReason",
    "changed_paths",
    "classify_mqtt_change",
    "touches_mqtt",
    "DeviceMqttState",
    "LifecycleCoordinator",
    "ConfigCommitted",
    "DeviceRemoved",
    "LifecycleEvent",
    "LifecycleHooks",
    "ConnectionRegistry",
    "ConnectionState",
    "RegistryEntry",
]
