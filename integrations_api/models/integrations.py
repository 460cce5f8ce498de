"""Modelo de configuración de integraciones de un Box.

Subdocumento ``integrations`` con dos bloques opcionales:

- ``mqtt``: bridge a un broker MQTT externo (el único que dispara conexiones)
- ``ttn``: parámetros de decodificación para The Things Network

Los nombres serializados conservan el formato camelCase del documento
almacenado (``messageFormat``, ``decodeOptions``...).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MQTT_URL_SCHEMES = ("mqtt://", "ws://")

MQTT_URL_ERROR = "must be either empty or start with mqtt:// or ws://"
JSON_PARSE_ERROR = "is not parseable as JSON"
MQTT_ENABLED_ERROR = "if enabled is true, url, topic and messageFormat shouldn't be empty or invalid"
TTN_BYTES_PROFILE_ERROR = 'if messageFormat is "bytes", there must be a profile specified'
TTN_CUSTOM_MASK_ERROR = 'if decodeOptions.profile is "custom" there must be byte mask specified'


class MqttMessageFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    APPLICATION_JSON = "application/json"
    TEXT_CSV = "text/csv"
    DEBUG_PLAIN = "debug_plain"
    UNSET = ""


class TtnMessageFormat(str, Enum):
    JSON = "json"
    BYTES = "bytes"


class TtnDecodeProfile(str, Enum):
    CUSTOM = "custom"
    SENSEBOX_HOME = "sensebox/home"


def is_json_parseable(value: str) -> bool:
    try:
        orjson.loads(value)
        return True
    except orjson.JSONDecodeError:
        return False


def check_mqtt_enabled(enabled: Any, url: Any, topic: Any, message_format: Any) -> Optional[str]:
    """Regla combinada: si enabled, url/topic/messageFormat no pueden estar vacíos."""
    if enabled is not True:
        return None
    for value in (url, topic, message_format):
        if isinstance(value, Enum):
            value = value.value
        if not isinstance(value, str) or not value.strip():
            return MQTT_ENABLED_ERROR
    return None


def check_ttn_bytes_profile(message_format: Any, profile: Any) -> Optional[str]:
    if isinstance(message_format, Enum):
        message_format = message_format.value
    if isinstance(profile, Enum):
        profile = profile.value
    if message_format == TtnMessageFormat.BYTES.value:
        if not isinstance(profile, str) or not profile.strip():
            return TTN_BYTES_PROFILE_ERROR
    return None


def check_ttn_custom_mask(profile: Any, byte_mask: Any) -> Optional[str]:
    if isinstance(profile, Enum):
        profile = profile.value
    if profile == TtnDecodeProfile.CUSTOM.value and byte_mask is None:
        return TTN_CUSTOM_MASK_ERROR
    return None


def ttn_decode_error(message_format: Any, profile: Any, byte_mask: Any) -> Optional[str]:
    """Ambas reglas de TTN se reportan juntas en un único error del subdocumento."""
    errors = [
        e
        for e in (
            check_ttn_bytes_profile(message_format, profile),
            check_ttn_custom_mask(profile, byte_mask),
        )
        if e
    ]
    return "; ".join(errors) or None


def _strip_str(v: Any) -> Any:
    return v.strip() if isinstance(v, str) else v


class MqttConfig(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, frozen=True)

    enabled: bool = False
    url: str = ""
    topic: str = ""
    message_format: MqttMessageFormat = Field(default=MqttMessageFormat.UNSET, alias="messageFormat")
    decode_options: str = Field(default="", alias="decodeOptions")
    connection_options: str = Field(default="", alias="connectionOptions")

    strip_message_format = field_validator("message_format", mode="before")(_strip_str)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if v and not v.startswith(MQTT_URL_SCHEMES):
            raise ValueError(MQTT_URL_ERROR)
        return v

    @field_validator("decode_options", "connection_options")
    @classmethod
    def validate_json_string(cls, v: str) -> str:
        if v and not is_json_parseable(v):
            raise ValueError(JSON_PARSE_ERROR)
        return v

    @model_validator(mode="after")
    def validate_enabled(self) -> "MqttConfig":
        error = check_mqtt_enabled(self.enabled, self.url, self.topic, self.message_format)
        if error:
            raise ValueError(error)
        return self

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def fingerprint(self) -> bytes:
        """Serialización canónica (claves ordenadas) para detectar cambios."""
        return orjson.dumps(self.to_document(), option=orjson.OPT_SORT_KEYS)


class TtnDecodeOptions(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, frozen=True)

    profile: Optional[TtnDecodeProfile] = None
    byte_mask: Optional[list[int]] = Field(default=None, alias="byteMask")

    strip_profile = field_validator("profile", mode="before")(_strip_str)


class TtnConfig(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, frozen=True)

    dev_id: str = Field(..., min_length=1)
    app_id: str = Field(..., min_length=1)
    message_format: TtnMessageFormat = Field(..., alias="messageFormat")
    decode_options: TtnDecodeOptions = Field(default_factory=TtnDecodeOptions, alias="decodeOptions")

    strip_message_format = field_validator("message_format", mode="before")(_strip_str)

    @model_validator(mode="after")
    def validate_decode_options(self) -> "TtnConfig":
        error = ttn_decode_error(
            self.message_format,
            self.decode_options.profile,
            self.decode_options.byte_mask,
        )
        if error:
            raise ValueError(error)
        return self


class IntegrationConfig(BaseModel):
    """Subdocumento ``integrations`` de un Box.

    ``mqtt`` y ``ttn`` pueden coexistir; sólo ``mqtt.enabled`` gobierna
    el ciclo de vida de conexiones.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    mqtt: Optional[MqttConfig] = None
    ttn: Optional[TtnConfig] = None

    @property
    def mqtt_enabled(self) -> bool:
        return self.mqtt is not None and self.mqtt.enabled

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
