"""Eventos explícitos del storage hacia el coordinador.

El storage llama a los hooks alrededor de cada escritura; los hooks
clasifican el cambio MQTT y emiten eventos (message passing) en lugar de
dejar flags sobre el documento.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from ..models.integrations import MqttConfig
from .changes import MqttChange, classify_mqtt_change

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigCommitted:
    """Escritura confirmada que cambió el subárbol ``integrations.mqtt``."""

    device_id: str
    revision: int
    change: MqttChange
    committed_at: float = field(default_factory=time.time)

    @property
    def config(self) -> Optional[MqttConfig]:
        return self.change.current


@dataclass(frozen=True)
class DeviceRemoved:
    device_id: str
    removed_at: float = field(default_factory=time.time)


LifecycleEvent = Union[ConfigCommitted, DeviceRemoved]


class LifecycleHooks:
    """Hooks pre-save / post-save / pre-remove del storage.

    - ``on_before_save``: clasifica el cambio; el storage lo conserva para
      la misma escritura y lo pasa a ``on_after_save`` / ``on_save_failed``
    - ``on_after_save``: tras el commit, emite ``ConfigCommitted`` si el cambio
      no es UNCHANGED
    - ``on_save_failed``: no hay transición
    - ``on_before_remove``: prepara ``DeviceRemoved``; se emite en
      ``on_after_remove`` solo si el DELETE se confirmó

    Thread-safe: los endpoints síncronos llaman desde el threadpool. El orden
    entre escrituras lo resuelve el coordinador por revisión.
    """

    def __init__(self, emit: Callable[[LifecycleEvent], None]):
        self._emit = emit
        self._lock = threading.Lock()

    def on_before_save(
        self,
        device_id: str,
        changed_paths: Iterable[str],
        new_config: Optional[MqttConfig],
        previous_config: Optional[MqttConfig] = None,
        revision: int = 0,
    ) -> MqttChange:
        return classify_mqtt_change(previous_config, new_config, set(changed_paths))

    def on_after_save(
        self,
        device_id: str,
        committed_config: Optional[MqttConfig],
        revision: int = 0,
        *,
        change: MqttChange,
    ) -> Optional[ConfigCommitted]:
        if change.is_noop:
            return None

        if committed_config is not None and committed_config != change.current:
            change = MqttChange(change.reason, change.previous, committed_config)

        event = ConfigCommitted(device_id=device_id, revision=revision, change=change)
        with self._lock:
            logger.info(
                "[LIFECYCLE] mqtt config %s for device=%s revision=%d",
                change.reason.value,
                device_id,
                revision,
            )
            self._emit(event)
        return event

    def on_save_failed(self, device_id: str, revision: int = 0, change: Optional[MqttChange] = None) -> None:
        if change is not None and not change.is_noop:
            logger.info(
                "[LIFECYCLE] device=%s revision=%d not committed, dropping mqtt %s",
                device_id,
                revision,
                change.reason.value,
            )

    def on_before_remove(self, device_id: str) -> DeviceRemoved:
        return DeviceRemoved(device_id=device_id)

    def on_after_remove(self, event: DeviceRemoved) -> None:
        with self._lock:
            self._emit(event)

    def on_remove_failed(self, event: DeviceRemoved) -> None:
        logger.warning("[LIFECYCLE] device=%s delete not committed, keeping connection", event.device_id)
