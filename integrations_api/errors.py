"""Jerarquía de errores del servicio de integraciones.

- IntegrationValidationError: síncrono, bloquea la escritura.
- BrokerConnectionError / BrokerAuthError: asíncronos, nunca fallan la escritura
  que los originó; el dispositivo queda DISCONNECTED.
- MessageDecodeError: por mensaje, se descarta solo ese mensaje.
"""

from __future__ import annotations

from typing import Mapping


class IntegrationError(Exception):
    """Base de todos los errores de integraciones."""


class IntegrationValidationError(IntegrationError):
    """La configuración viola una o más invariantes.

    ``errors`` mapea dot-path → mensaje, con TODOS los campos que fallan.
    """

    def __init__(self, errors: Mapping[str, str]):
        self.errors = dict(errors)
        super().__init__(format_field_errors(self.errors))


class BrokerConnectionError(IntegrationError):
    """Broker inalcanzable, URL inválida, timeout o desconexión inesperada."""


class BrokerAuthError(BrokerConnectionError):
    """El broker rechazó las credenciales. No se reintenta hasta que cambie la config."""

    def __init__(self, message: str, reason_code: int | None = None):
        self.reason_code = reason_code
        super().__init__(message)


class MessageDecodeError(IntegrationError):
    """Un mensaje entrante no se pudo decodificar con el messageFormat configurado."""


class BoxNotFoundError(IntegrationError):
    def __init__(self, box_id: str):
        self.box_id = box_id
        super().__init__(f"Box {box_id} not found")


class ConcurrentUpdateError(IntegrationError):
    """Otra escritura cambió el box entre la lectura y el commit."""

    def __init__(self, box_id: str, expected_revision: int):
        self.box_id = box_id
        self.expected_revision = expected_revision
        super().__init__(
            f"Box {box_id} was modified concurrently (expected revision {expected_revision})"
        )


def format_field_errors(errors: Mapping[str, str]) -> str:
    """``Parameter <path> <message>, ...`` en el orden de los campos."""
    return ", ".join(f"Parameter {path} {message}" for path, message in errors.items())
