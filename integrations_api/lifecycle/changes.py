"""Detección de cambios de la configuración MQTT.

Dos niveles:

1. ``changed_paths``: dot-paths modificados por una escritura (diff de documentos).
   Si ningún path cae bajo ``integrations.mqtt`` la escritura no toca conexiones.
2. ``classify_mqtt_change``: compara la serialización canónica del subárbol
   ``mqtt`` antes/después y produce un descriptor etiquetado.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from ..models.integrations import MqttConfig

MQTT_PATH = "integrations.mqtt"


class MqttChangeReason(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    RECONFIGURED = "reconfigured"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class MqttChange:
    reason: MqttChangeReason
    previous: Optional[MqttConfig] = None
    current: Optional[MqttConfig] = None

    @property
    def requires_teardown(self) -> bool:
        return self.reason in (MqttChangeReason.DISABLED, MqttChangeReason.RECONFIGURED)

    @property
    def requires_connect(self) -> bool:
        return self.reason in (MqttChangeReason.ENABLED, MqttChangeReason.RECONFIGURED)

    @property
    def is_noop(self) -> bool:
        return self.reason is MqttChangeReason.UNCHANGED


_MISSING = object()


def changed_paths(before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]], prefix: str = "") -> set[str]:
    """Dot-paths que difieren entre dos documentos, incluidos los padres.

    ``{"integrations": {"mqtt": {"url": "a"}}}`` vs ``url: "b"`` produce
    ``{"integrations", "integrations.mqtt", "integrations.mqtt.url"}``.
    """
    before = before or {}
    after = after or {}
    paths: set[str] = set()

    for key in set(before) | set(after):
        path = f"{prefix}{key}"
        old = before.get(key, _MISSING)
        new = after.get(key, _MISSING)
        if old == new:
            continue

        if isinstance(old, Mapping) and isinstance(new, Mapping):
            nested = changed_paths(old, new, prefix=f"{path}.")
            if nested:
                paths.add(path)
                paths.update(nested)
        else:
            paths.add(path)
            # subdocumento creado/eliminado: todos sus hojas cambian
            for side in (old, new):
                if isinstance(side, Mapping):
                    paths.update(changed_paths({}, side, prefix=f"{path}."))

    return paths


def touches_mqtt(paths: Iterable[str]) -> bool:
    return any(p == MQTT_PATH or p.startswith(MQTT_PATH + ".") for p in paths)


def _fingerprint(config: Optional[MqttConfig]) -> Optional[bytes]:
    return config.fingerprint() if config is not None else None


def classify_mqtt_change(
    previous: Optional[MqttConfig],
    current: Optional[MqttConfig],
    paths: Optional[Iterable[str]] = None,
) -> MqttChange:
    """Clasifica la transición de la config MQTT de un dispositivo.

    Args:
        previous: config almacenada antes de la escritura
        current: config que se va a persistir
        paths: dot-paths modificados; si se proveen y ninguno está bajo
            ``integrations.mqtt`` el resultado es UNCHANGED sin comparar

    Returns:
        MqttChange con reason ENABLED / DISABLED / RECONFIGURED / UNCHANGED
    """
    if paths is not None and not touches_mqtt(paths):
        return MqttChange(MqttChangeReason.UNCHANGED, previous, current)

    if _fingerprint(previous) == _fingerprint(current):
        return MqttChange(MqttChangeReason.UNCHANGED, previous, current)

    was_enabled = previous is not None and previous.enabled
    now_enabled = current is not None and current.enabled

    if now_enabled and not was_enabled:
        reason = MqttChangeReason.ENABLED
    elif was_enabled and not now_enabled:
        reason = MqttChangeReason.DISABLED
    elif was_enabled and now_enabled:
        reason = MqttChangeReason.RECONFIGURED
    else:
        # edición de una config deshabilitada
        reason = MqttChangeReason.UNCHANGED

    return MqttChange(reason, previous, current)
