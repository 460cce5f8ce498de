"""Handoff de lecturas decodificadas al pipeline de ingesta.

El pipeline es externo: este módulo sólo define el contrato
``submit_reading(device_id, decoded_payload, received_at)`` y dos
implementaciones:

- RedisStreamSink: XADD a un stream acotado (MAXLEN ~)
- InMemoryIngestionSink: cola acotada en memoria, descarta si está llena
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import orjson
import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadingSubmission:
    """Lectura decodificada etiquetada con el dispositivo de origen."""

    device_id: str
    payload: Any
    received_at: float

    def to_stream_fields(self) -> dict[str, bytes]:
        return {
            "device_id": self.device_id.encode(),
            "payload": orjson.dumps(self.payload),
            "received_at": repr(self.received_at).encode(),
        }


class IngestionSink(Protocol):
    """Contrato del pipeline de ingesta visto desde el adapter MQTT.

    Fire-and-forget: no debe bloquear el loop de recepción más allá de
    encolar; las implementaciones deciden su política de backpressure.
    """

    async def submit_reading(self, device_id: str, decoded_payload: Any, received_at: float) -> bool:
        ...


class InMemoryIngestionSink:
    """Cola acotada en memoria. Útil en desarrollo y tests."""

    def __init__(self, maxsize: int = 10_000) -> None:
        self._queue: asyncio.Queue[ReadingSubmission] = asyncio.Queue(maxsize=maxsize)
        self._submitted = 0
        self._dropped = 0

    async def submit_reading(self, device_id: str, decoded_payload: Any, received_at: float) -> bool:
        try:
            self._queue.put_nowait(ReadingSubmission(device_id, decoded_payload, received_at))
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning("[INGEST] Queue full, dropped reading device=%s", device_id)
            return False
        self._submitted += 1
        return True

    async def get(self) -> ReadingSubmission:
        return await self._queue.get()

    def get_nowait(self) -> Optional[ReadingSubmission]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def stats(self) -> dict:
        return {
            "submitted": self._submitted,
            "dropped": self._dropped,
            "queue_depth": self._queue.qsize(),
            "queue_max": self._queue.maxsize,
        }


class RedisStreamSink:
    """Publica lecturas a un Redis Stream para el pipeline de ingesta."""

    def __init__(
        self,
        redis_url: str,
        stream_name: str = "readings:mqtt",
        max_len: int = 10000,
        client: Optional[redis.Redis] = None,
    ):
        self._redis_url = redis_url
        self._stream_name = stream_name
        self._max_len = max_len
        self._client: Optional[redis.Redis] = client
        self._connected = client is not None
        self._submitted = 0
        self._failed = 0

    @property
    def stream_name(self) -> str:
        return self._stream_name

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """Conecta a Redis."""
        try:
            self._client = redis.Redis.from_url(
                self._redis_url,
                decode_responses=False,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            self._client.ping()
            self._connected = True
            logger.info("[REDIS] Connected: %s", self._redis_url.split("@")[-1])
            return True
        except redis.RedisError as e:
            self._connected = False
            logger.warning("[REDIS] Connection failed: %s", e)
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._connected = False

    async def submit_reading(self, device_id: str, decoded_payload: Any, received_at: float) -> bool:
        submission = ReadingSubmission(device_id, decoded_payload, received_at or time.time())
        return await asyncio.to_thread(self._publish, submission)

    def _publish(self, submission: ReadingSubmission) -> bool:
        if not self._connected or self._client is None:
            self._failed += 1
            return False

        try:
            self._client.xadd(
                self._stream_name,
                submission.to_stream_fields(),
                maxlen=self._max_len,
                approximate=True,
            )
            self._submitted += 1
            return True
        except redis.RedisError as e:
            self._failed += 1
            logger.warning("[REDIS] Publish failed device=%s: %s", submission.device_id, e)
            return False

    @property
    def stats(self) -> dict:
        return {
            "connected": self._connected,
            "stream": self._stream_name,
            "submitted": self._submitted,
            "failed": self._failed,
        }
