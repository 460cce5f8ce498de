"""Coordinador del ciclo de vida de conexiones MQTT.

Invariante: exactamente una conexión viva por dispositivo con
``mqtt.enabled == true`` y ninguna en otro caso.

Transiciones por dispositivo (DISCONNECTED, CONNECTING, CONNECTED, DISCONNECTING):

- ENABLED       → connect
- DISABLED      → teardown
- RECONFIGURED  → teardown + connect con los nuevos parámetros
- eliminación   → teardown incondicional, sin entrada en el registro
- error fatal   → DISCONNECTED, se loguea, sin reintento automático

Cada transición corre bajo el lock del dispositivo. Los eventos llevan la
revisión confirmada en el storage; eventos más viejos que la última
revisión aplicada se ignoran (gana el último commit).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from ..errors import BrokerAuthError
from ..metrics import LIFECYCLE_EVENTS, MQTT_LIFECYCLE_TRANSITIONS
from ..models.integrations import MqttConfig
from .events import ConfigCommitted, DeviceRemoved, LifecycleEvent
from .registry import ConnectionHandle, ConnectionRegistry, ConnectionState, RegistryEntry

logger = logging.getLogger(__name__)

FatalCallback = Callable[[Any, Exception], None]
AdapterFactory = Callable[[str, MqttConfig, FatalCallback], ConnectionHandle]


@dataclass(frozen=True)
class DeviceMqttState:
    """Estado MQTT almacenado de un dispositivo, para el reconcile."""

    device_id: str
    config: Optional[MqttConfig]
    revision: int

    @property
    def enabled(self) -> bool:
        return self.config is not None and self.config.enabled


StatesSource = Callable[[], Union[Iterable[DeviceMqttState], Awaitable[Iterable[DeviceMqttState]]]]


class LifecycleCoordinator:
    """Reacciona a eventos del storage conectando/desconectando adapters."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        adapter_factory: AdapterFactory,
        *,
        connect_timeout: float = 10.0,
        tombstone_ttl: float = 600.0,
    ):
        self._registry = registry
        self._adapter_factory = adapter_factory
        self._connect_timeout = connect_timeout
        self._tombstone_ttl = tombstone_ttl

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: set[asyncio.Task] = set()
        self._applied: dict[str, int] = {}
        # device id → instante de eliminación (monotonic)
        self._tombstones: dict[str, float] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Arranque / parada
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        logger.info("[LIFECYCLE] Coordinator started (connect_timeout=%.1fs)", self._connect_timeout)

    async def stop(self) -> None:
        """Deja de aceptar eventos, espera lo pendiente y cierra el registro."""
        self._stopping = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.wait({self._sweep_task})
            self._sweep_task = None

        pending = list(self._tasks)
        if pending:
            await asyncio.wait(pending)

        await self._registry.close()
        logger.info("[LIFECYCLE] Coordinator stopped")

    # ------------------------------------------------------------------
    # Entrada de eventos
    # ------------------------------------------------------------------

    def publish(self, event: LifecycleEvent) -> None:
        """Encola un evento desde cualquier hilo.

        El orden de llamada se preserva: ``call_soon_threadsafe`` es FIFO y
        cada tarea toma primero el lock (FIFO) del dispositivo.
        """
        if self._loop is None:
            raise RuntimeError("Coordinator not started")
        if self._stopping:
            logger.warning("[LIFECYCLE] Coordinator stopping, ignoring %s", type(event).__name__)
            return
        self._loop.call_soon_threadsafe(self._spawn, event)

    def _spawn(self, event: LifecycleEvent) -> None:
        self._track(asyncio.ensure_future(self.handle(event)))

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, event: LifecycleEvent) -> None:
        if isinstance(event, ConfigCommitted):
            await self.on_config_committed(event)
        elif isinstance(event, DeviceRemoved):
            await self.on_device_removed(event)
        else:
            raise TypeError(f"Unsupported lifecycle event {event!r}")

    async def on_config_committed(self, event: ConfigCommitted) -> None:
        device_id = event.device_id
        async with self._registry.hold(device_id):
            if self._is_removed(device_id):
                LIFECYCLE_EVENTS.labels(event="config", result="ignored").inc()
                logger.info("[LIFECYCLE] device=%s removed, ignoring revision %d", device_id, event.revision)
                return

            applied = self._applied.get(device_id)
            if applied is not None and event.revision <= applied:
                LIFECYCLE_EVENTS.labels(event="config", result="stale").inc()
                logger.info(
                    "[LIFECYCLE] device=%s stale revision %d (applied %d), ignoring",
                    device_id,
                    event.revision,
                    applied,
                )
                return

            self._applied[device_id] = event.revision
            LIFECYCLE_EVENTS.labels(event="config", result="applied").inc()
            await self._apply(device_id, event.config, event.revision)

    async def on_device_removed(self, event: DeviceRemoved) -> None:
        device_id = event.device_id
        async with self._registry.hold(device_id):
            self._prune_tombstones()
            self._tombstones[device_id] = time.monotonic()
            self._applied.pop(device_id, None)
            LIFECYCLE_EVENTS.labels(event="removed", result="applied").inc()
            if await self._registry.discard(device_id):
                logger.info("[LIFECYCLE] device=%s removed, connection torn down", device_id)

    def _is_removed(self, device_id: str) -> bool:
        removed_at = self._tombstones.get(device_id)
        if removed_at is None:
            return False
        if time.monotonic() - removed_at >= self._tombstone_ttl:
            del self._tombstones[device_id]
            return False
        return True

    def _prune_tombstones(self) -> None:
        """Olvida eliminaciones más viejas que ``tombstone_ttl``."""
        cutoff = time.monotonic() - self._tombstone_ttl
        for device_id in [d for d, removed_at in self._tombstones.items() if removed_at <= cutoff]:
            del self._tombstones[device_id]

    # ------------------------------------------------------------------
    # Transiciones (con el lock del dispositivo tomado)
    # ------------------------------------------------------------------

    async def _apply(self, device_id: str, config: Optional[MqttConfig], revision: int) -> None:
        entry = self._registry.get(device_id)
        enabled = config is not None and config.enabled

        if not enabled:
            if entry is not None:
                logger.info("[LIFECYCLE] device=%s mqtt disabled, disconnecting", device_id)
                await self._registry.discard(device_id)
            return

        if entry is not None and entry.is_live and entry.config == config:
            # misma config ya conectada o conectando
            entry.revision = revision
            return

        if entry is not None:
            logger.info("[LIFECYCLE] device=%s mqtt reconfigured, reconnecting", device_id)
            await self._registry.discard(device_id)

        self._start_connect(device_id, config, revision)

    def _start_connect(self, device_id: str, config: MqttConfig, revision: int) -> RegistryEntry:
        handle = self._adapter_factory(device_id, config, self._on_adapter_fatal)
        entry = RegistryEntry(
            device_id=device_id,
            config=config,
            revision=revision,
            handle=handle,
            state=ConnectionState.CONNECTING,
        )
        self._registry.put(entry)
        entry.connect_task = asyncio.ensure_future(self._run_connect(entry))
        MQTT_LIFECYCLE_TRANSITIONS.labels(action="connect").inc()
        logger.info("[LIFECYCLE] device=%s connecting to %s (revision %d)", device_id, config.url, revision)
        return entry

    async def _run_connect(self, entry: RegistryEntry) -> None:
        try:
            await asyncio.wait_for(entry.handle.connect(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            await self._mark_failed(entry, f"handshake timed out after {self._connect_timeout:.1f}s")
        except BrokerAuthError as e:
            await self._mark_failed(entry, str(e), auth_failed=True)
        except Exception as e:
            await self._mark_failed(entry, str(e))
        else:
            if self._registry.get(entry.device_id) is entry and entry.state is ConnectionState.CONNECTING:
                entry.set_state(ConnectionState.CONNECTED)
                MQTT_LIFECYCLE_TRANSITIONS.labels(action="connected").inc()
                logger.info("[LIFECYCLE] device=%s connected", entry.device_id)

    async def _mark_failed(self, entry: RegistryEntry, error: str, auth_failed: bool = False) -> None:
        MQTT_LIFECYCLE_TRANSITIONS.labels(action="fatal").inc()
        if auth_failed:
            logger.error(
                "[LIFECYCLE] device=%s broker rejected credentials, not retrying until config changes: %s",
                entry.device_id,
                error,
            )
        else:
            logger.error("[LIFECYCLE] device=%s connection failed: %s", entry.device_id, error)

        entry.auth_failed = auth_failed
        entry.set_state(ConnectionState.DISCONNECTED, error=error)
        try:
            await entry.handle.disconnect()
        except Exception as e:
            logger.warning("[LIFECYCLE] device=%s cleanup after failure: %s", entry.device_id, e)
            entry.handle.abort()

    def _on_adapter_fatal(self, handle: Any, error: Exception) -> None:
        """Callback del adapter (en el event loop) tras una caída inesperada."""
        device_id = getattr(handle, "device_id", None)
        if device_id is None:
            return
        self._track(asyncio.ensure_future(self._handle_fatal(device_id, handle, error)))

    async def _handle_fatal(self, device_id: str, handle: Any, error: Exception) -> None:
        async with self._registry.hold(device_id):
            entry = self._registry.get(device_id)
            if entry is None or entry.handle is not handle or entry.state is not ConnectionState.CONNECTED:
                return
            await self._mark_failed(entry, str(error), auth_failed=isinstance(error, BrokerAuthError))

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        states: Iterable[DeviceMqttState],
        as_of: Optional[float] = None,
    ) -> dict[str, int]:
        """Sincroniza el registro con el estado almacenado de todos los Boxes.

        - habilitado sin entrada viva (o con fallo de conexión) → connect
        - entrada cuyo Box está deshabilitado o ya no existe → teardown
        - fallos de autenticación con la misma config no se reintentan

        Args:
            states: snapshot del storage
            as_of: instante en que se leyó el snapshot; entradas modificadas
                después no se tocan
        """
        self._prune_tombstones()
        desired = {s.device_id: s for s in states}
        device_ids = set(desired) | set(self._registry.device_ids())
        summary = {"connected": 0, "disconnected": 0, "unchanged": 0, "skipped": 0}

        async def _sync(device_id: str) -> str:
            async with self._registry.hold(device_id):
                state = desired.get(device_id)
                entry = self._registry.get(device_id)

                if self._is_removed(device_id):
                    if entry is not None:
                        await self._registry.discard(device_id)
                        return "disconnected"
                    return "skipped"

                if entry is not None and as_of is not None and entry.updated_at > as_of:
                    return "skipped"

                if state is not None and state.revision < self._applied.get(device_id, 0):
                    # snapshot anterior a un evento ya aplicado
                    return "skipped"

                if state is None or not state.enabled:
                    if entry is not None:
                        await self._registry.discard(device_id)
                        return "disconnected"
                    return "unchanged"

                if entry is not None and entry.config == state.config:
                    if entry.is_live or entry.auth_failed:
                        return "unchanged"

                if entry is not None:
                    await self._registry.discard(device_id)
                self._applied[device_id] = max(state.revision, self._applied.get(device_id, 0))
                self._start_connect(device_id, state.config, state.revision)
                return "connected"

        for result in await asyncio.gather(*(_sync(device_id) for device_id in device_ids)):
            summary[result] += 1

        logger.info("[LIFECYCLE] Reconcile finished: %s", summary)
        return summary

    async def run_reconcile_loop(self, source: StatesSource, interval: float) -> None:
        """Sweep periódico; errores del storage se loguean y se reintenta en el próximo ciclo."""
        while not self._stopping:
            await asyncio.sleep(interval)
            try:
                as_of = time.time()
                states = source()
                if asyncio.iscoroutine(states):
                    states = await states
                await self.reconcile(states, as_of=as_of)
            except Exception:
                logger.exception("[LIFECYCLE] Reconcile sweep failed")

    def start_reconcile_loop(self, source: StatesSource, interval: float) -> None:
        if interval <= 0 or self._sweep_task is not None:
            return
        self._sweep_task = asyncio.ensure_future(self.run_reconcile_loop(source, interval))
        logger.info("[LIFECYCLE] Reconcile sweep every %.0fs", interval)

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Espera eventos pendientes y handshakes en curso (tests / shutdown ordenado)."""
        while True:
            # deja correr los eventos ya encolados con call_soon_threadsafe
            await asyncio.sleep(0)
            pending = [t for t in self._tasks if not t.done()]
            pending += [
                e.connect_task
                for e in (self._registry.get(d) for d in self._registry.device_ids())
                if e is not None and e.connect_task is not None and not e.connect_task.done()
            ]
            if not pending:
                return
            await asyncio.wait(pending)

    def status(self) -> dict[str, Any]:
        entries = self._registry.snapshot()
        by_state: dict[str, int] = {}
        for entry in entries:
            by_state[entry["state"]] = by_state.get(entry["state"], 0) + 1
        return {
            "devices": len(entries),
            "by_state": by_state,
            "pending_events": sum(1 for t in self._tasks if not t.done()),
            "connections": entries,
        }
