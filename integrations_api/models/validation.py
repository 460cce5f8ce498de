"""Validación agregada del subdocumento ``integrations``.

A diferencia de construir el modelo directamente, ``validate_integrations``
reporta TODOS los campos que fallan en una sola pasada: las reglas cruzadas
(enabled, bytes/profile, custom/byteMask) se evalúan sobre el documento crudo
aunque otros campos del mismo subdocumento ya hayan fallado.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Optional

from pydantic import ValidationError

from ..errors import IntegrationValidationError
from .integrations import IntegrationConfig, check_mqtt_enabled, ttn_decode_error

logger = logging.getLogger(__name__)

ROOT_PATH = "integrations"


@dataclass
class ValidationResult:
    """Resultado de validación."""

    valid: bool
    config: Optional[IntegrationConfig] = None
    errors: dict[str, str] = field(default_factory=dict)

    def raise_for_errors(self) -> IntegrationConfig:
        if not self.valid or self.config is None:
            raise IntegrationValidationError(self.errors)
        return self.config


def _dot_path(loc: tuple) -> str:
    return ".".join([ROOT_PATH, *(str(part) for part in loc)])


def _clean_message(msg: str) -> str:
    # pydantic antepone "Value error, " a los ValueError de los validators
    return msg.removeprefix("Value error, ")


def _cross_field_errors(raw: Mapping[str, Any]) -> Iterator[tuple[str, str]]:
    mqtt = raw.get("mqtt")
    if isinstance(mqtt, Mapping):
        error = check_mqtt_enabled(
            mqtt.get("enabled", False),
            mqtt.get("url", ""),
            mqtt.get("topic", ""),
            mqtt.get("messageFormat", mqtt.get("message_format", "")),
        )
        if error:
            yield f"{ROOT_PATH}.mqtt", error

    ttn = raw.get("ttn")
    if isinstance(ttn, Mapping):
        decode_options = ttn.get("decodeOptions", ttn.get("decode_options")) or {}
        if not isinstance(decode_options, Mapping):
            decode_options = {}
        message_format = ttn.get("messageFormat", ttn.get("message_format"))
        if isinstance(message_format, str):
            message_format = message_format.strip()
        profile = decode_options.get("profile")
        if isinstance(profile, str):
            profile = profile.strip()
        error = ttn_decode_error(
            message_format,
            profile,
            decode_options.get("byteMask", decode_options.get("byte_mask")),
        )
        if error:
            yield f"{ROOT_PATH}.ttn", error


def validate_integrations(data: Optional[Mapping[str, Any]]) -> ValidationResult:
    """Valida un documento ``integrations`` candidato.

    Args:
        data: documento crudo (camelCase o snake_case); ``None`` equivale a vacío

    Returns:
        ValidationResult con la config tipada o el mapa path → mensaje.
        Nunca modifica ``data``.
    """
    if data is None:
        data = {}
    if isinstance(data, IntegrationConfig):
        return ValidationResult(valid=True, config=data)
    if not isinstance(data, Mapping):
        return ValidationResult(valid=False, errors={ROOT_PATH: "must be an object"})

    raw = copy.deepcopy(dict(data))
    errors: dict[str, str] = {}
    config: Optional[IntegrationConfig] = None

    try:
        config = IntegrationConfig.model_validate(raw)
    except ValidationError as e:
        for err in e.errors():
            errors.setdefault(_dot_path(err["loc"]), _clean_message(err["msg"]))

    for path, message in _cross_field_errors(raw):
        errors.setdefault(path, message)

    if errors:
        logger.debug("[VALIDATION] integrations rejected: %s", errors)
        return ValidationResult(valid=False, errors=errors)

    return ValidationResult(valid=True, config=config)
