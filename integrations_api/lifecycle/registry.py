"""Registro de conexiones MQTT vivas: device id → entrada.

Servicio explícito (no estado global): se crea en el arranque, se inyecta
en el coordinador y ``close()`` desconecta todo en el shutdown.

Exclusión mutua POR dispositivo (``hold``); nunca un lock global, para
no serializar reconexiones de dispositivos no relacionados. El lock de un
dispositivo sin entrada se libera cuando nadie lo espera.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Protocol

from ..metrics import MQTT_LIFECYCLE_TRANSITIONS, MQTT_REGISTRY_ENTRIES
from ..models.integrations import MqttConfig

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class ConnectionHandle(Protocol):
    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    def abort(self) -> None:
        ...


@dataclass
class RegistryEntry:
    device_id: str
    config: MqttConfig
    revision: int
    handle: ConnectionHandle
    state: ConnectionState = ConnectionState.CONNECTING
    connect_task: Optional[asyncio.Task] = None
    last_error: Optional[str] = None
    auth_failed: bool = False
    updated_at: float = field(default_factory=time.time)

    @property
    def is_live(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)

    def set_state(self, state: ConnectionState, error: Optional[str] = None) -> None:
        self.state = state
        if error is not None:
            self.last_error = error
        self.updated_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        stats = getattr(self.handle, "stats", None)
        return {
            "device_id": self.device_id,
            "state": self.state.value,
            "revision": self.revision,
            "url": self.config.url,
            "topic": self.config.topic,
            "message_format": self.config.message_format.value,
            "last_error": self.last_error,
            "updated_at": self.updated_at,
            "stats": stats if isinstance(stats, dict) else None,
        }


class ConnectionRegistry:
    """Device id → RegistryEntry, con un asyncio.Lock por dispositivo."""

    def __init__(self, disconnect_timeout: float = 5.0):
        self._entries: dict[str, RegistryEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._disconnect_timeout = disconnect_timeout
        self._closed = False

    # ------------------------------------------------------------------
    # Acceso
    # ------------------------------------------------------------------

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, device_id: str) -> AsyncIterator[None]:
        """Toma el lock del dispositivo; lo descarta al salir si no quedan usuarios ni entrada."""
        lock = self._lock_for(device_id)
        self._lock_users[device_id] = self._lock_users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users.pop(device_id) - 1
            if users:
                self._lock_users[device_id] = users
            elif device_id not in self._entries and self._locks.get(device_id) is lock:
                del self._locks[device_id]

    def get(self, device_id: str) -> Optional[RegistryEntry]:
        return self._entries.get(device_id)

    def put(self, entry: RegistryEntry) -> None:
        """Registra una entrada. El llamador debe tener el lock del dispositivo."""
        if self._closed:
            raise RuntimeError("Connection registry is closed")
        if entry.device_id in self._entries:
            raise RuntimeError(f"Device {entry.device_id} already has a registry entry")
        self._entries[entry.device_id] = entry
        MQTT_REGISTRY_ENTRIES.set(len(self._entries))

    def device_ids(self) -> list[str]:
        return list(self._entries)

    def snapshot(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries.values()]

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def discard(self, device_id: str) -> bool:
        """Cancela un connect pendiente, desconecta y elimina la entrada.

        El llamador debe tener el lock del dispositivo.

        Returns:
            True si había entrada
        """
        entry = self._entries.get(device_id)
        if entry is None:
            return False

        entry.set_state(ConnectionState.DISCONNECTING)

        # Un handshake pendiente nunca debe ganar a la desconexión
        task = entry.connect_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        MQTT_LIFECYCLE_TRANSITIONS.labels(action="disconnect").inc()
        try:
            await asyncio.wait_for(entry.handle.disconnect(), timeout=self._disconnect_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[REGISTRY] device=%s disconnect timed out after %.1fs, forcing close",
                device_id,
                self._disconnect_timeout,
            )
            entry.handle.abort()
        except Exception as e:
            logger.warning("[REGISTRY] device=%s error while disconnecting: %s", device_id, e)
            entry.handle.abort()
        finally:
            entry.set_state(ConnectionState.DISCONNECTED)
            if self._entries.get(device_id) is entry:
                del self._entries[device_id]
            MQTT_REGISTRY_ENTRIES.set(len(self._entries))

        logger.info("[REGISTRY] device=%s removed from registry", device_id)
        return True

    async def close(self) -> None:
        """Desconecta todas las entradas (shutdown del proceso)."""
        self._closed = True
        device_ids = self.device_ids()
        if not device_ids:
            return

        logger.info("[REGISTRY] Closing %d connections", len(device_ids))

        async def _release(device_id: str) -> None:
            async with self.hold(device_id):
                await self.discard(device_id)

        await asyncio.gather(*(_release(device_id) for device_id in device_ids))
