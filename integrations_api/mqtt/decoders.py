"""Decodificadores de mensajes MQTT según ``messageFormat``.

- json / application/json → objeto parseado (opción ``jsonPath``)
- csv / text/csv → lista de filas (opción ``delimiter``)
- debug_plain → payload crudo como texto
"""

from __future__ import annotations

import io
from typing import Any, Mapping, Optional

import orjson
import pandas as pd

from ..errors import MessageDecodeError
from ..models.integrations import MqttMessageFormat

JSON_FORMATS = {MqttMessageFormat.JSON, MqttMessageFormat.APPLICATION_JSON}
CSV_FORMATS = {MqttMessageFormat.CSV, MqttMessageFormat.TEXT_CSV}


def decode_message(
    message_format: MqttMessageFormat | str,
    payload: bytes,
    decode_options: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Decodifica un payload MQTT.

    Raises:
        MessageDecodeError: payload no decodificable con el formato dado
    """
    try:
        fmt = MqttMessageFormat(message_format)
    except ValueError as e:
        raise MessageDecodeError(f"Unknown message format {message_format!r}") from e

    options = decode_options or {}

    if fmt in JSON_FORMATS:
        return _decode_json(payload, options)
    if fmt in CSV_FORMATS:
        return _decode_csv(payload, options)
    if fmt is MqttMessageFormat.DEBUG_PLAIN:
        return payload.decode("utf-8", errors="replace")

    raise MessageDecodeError("No message format configured")


def _decode_json(payload: bytes, options: Mapping[str, Any]) -> Any:
    try:
        data = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise MessageDecodeError(f"Invalid JSON: {e}") from e

    json_path = options.get("jsonPath")
    if json_path:
        data = _select_path(data, str(json_path))
    return data


def _select_path(data: Any, json_path: str) -> Any:
    """Resuelve paths simples ``$.a.b`` / ``a.0.b`` sobre el JSON decodificado."""
    path = json_path.strip()
    if path.startswith("$"):
        path = path[1:]
    current = data
    for part in (p for p in path.split(".") if p):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise MessageDecodeError(f"jsonPath {json_path!r} not found in payload")
    return current


def _decode_csv(payload: bytes, options: Mapping[str, Any]) -> list[list[str]]:
    delimiter = str(options.get("delimiter") or ",")
    if len(delimiter) != 1:
        raise MessageDecodeError(f"Invalid csv delimiter {delimiter!r}")

    try:
        frame = pd.read_csv(
            io.BytesIO(payload),
            sep=delimiter,
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
            encoding="utf-8",
        )
    except pd.errors.EmptyDataError as e:
        raise MessageDecodeError("CSV payload has no values") from e
    except (pd.errors.ParserError, ValueError) as e:
        raise MessageDecodeError(f"Invalid CSV: {e}") from e

    # filas cortas quedan con NaN en las columnas faltantes
    rows = [
        [cell.strip() if isinstance(cell, str) else "" for cell in row]
        for row in frame.itertuples(index=False, name=None)
    ]
    rows = [row for row in rows if any(row)]
    if not rows:
        raise MessageDecodeError("CSV payload has no values")
    return rows
