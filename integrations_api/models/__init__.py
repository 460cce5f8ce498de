"""Modelo y validación de la configuración de integraciones."""

from .integrations import (
    IntegrationConfig,
    MqttConfig,
    MqttMessageFormat,
    TtnConfig,
    TtnDecodeOptions,
    TtnDecodeProfile,
    TtnMessageFormat,
)
from .validation import ValidationResult, validate_integrations

__all__ = [
    "IntegrationConfig",
    "MqttConfig",
    "MqttMessageFormat",
    "TtnConfig",
    "TtnDecodeOptions",
    "TtnDecodeProfile",
    "TtnMessageFormat",
    "ValidationResult",
    "validate_integrations",
]
