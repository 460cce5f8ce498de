"""Parámetros de conexión al broker a partir de la config del Box.

- ``url``: ``mqtt://host[:port]`` (tcp, 1883) o ``ws://host[:port]/path``
  (websockets, 80). Credenciales en la URL se aceptan.
- ``connectionOptions``: JSON con ``username``, ``password``, ``clientId``,
  ``keepalive``, ``clean``. Claves desconocidas se ignoran.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import unquote, urlsplit

import orjson

from ..errors import BrokerConnectionError

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"mqtt": 1883, "ws": 80}
TRANSPORTS = {"mqtt": "tcp", "ws": "websockets"}
KNOWN_OPTIONS = {"username", "password", "clientId", "keepalive", "clean"}


@dataclass(frozen=True)
class BrokerParams:
    host: str
    port: int
    transport: str
    path: str = "/"
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ConnectionOptions:
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: Optional[int] = None
    clean_session: Optional[bool] = None


def parse_json_object(raw: str, field_name: str) -> dict[str, Any]:
    """Parsea un string JSON opcional; sólo objetos producen opciones."""
    if not raw:
        return {}
    value = orjson.loads(raw)
    if not isinstance(value, dict):
        logger.warning("[MQTT] %s is not a JSON object, ignoring", field_name)
        return {}
    return value


def parse_broker_url(url: str) -> BrokerParams:
    """Convierte la URL del broker en parámetros de paho.

    Raises:
        BrokerConnectionError: URL sin esquema soportado, sin host o con puerto inválido
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise BrokerConnectionError(f"Malformed broker url {url!r}: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in TRANSPORTS:
        raise BrokerConnectionError(f"Unsupported broker url scheme {parts.scheme!r}")
    if not parts.hostname:
        raise BrokerConnectionError(f"Broker url {url!r} has no host")

    return BrokerParams(
        host=parts.hostname,
        port=port or DEFAULT_PORTS[scheme],
        transport=TRANSPORTS[scheme],
        path=parts.path or "/",
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


def parse_connection_options(raw: str) -> ConnectionOptions:
    options = parse_json_object(raw, "connectionOptions")

    unknown = set(options) - KNOWN_OPTIONS
    if unknown:
        logger.debug("[MQTT] Ignoring connection options: %s", sorted(unknown))

    keepalive = options.get("keepalive")
    clean = options.get("clean")

    return ConnectionOptions(
        username=_optional_str(options.get("username")),
        password=_optional_str(options.get("password")),
        client_id=_optional_str(options.get("clientId")),
        keepalive=int(keepalive) if _is_positive_number(keepalive) else None,
        clean_session=clean if isinstance(clean, bool) else None,
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
