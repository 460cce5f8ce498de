"""Fakes compartidos: adapter de conexión, cliente paho y helpers de commit."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from integrations_api.lifecycle.changes import changed_paths
from integrations_api.lifecycle.coordinator import LifecycleCoordinator
from integrations_api.lifecycle.events import LifecycleHooks
from integrations_api.lifecycle.registry import ConnectionRegistry
from integrations_api.models.integrations import MqttConfig


# =============================================================================
# CONFIGS
# =============================================================================

def mqtt_config(**overrides: Any) -> MqttConfig:
    data = {
        "enabled": True,
        "url": "mqtt://broker.local/",
        "topic": "boxes/1/readings",
        "messageFormat": "json",
    }
    data.update(overrides)
    return MqttConfig.model_validate(data)


@pytest.fixture
def enabled_config() -> MqttConfig:
    return mqtt_config()


# =============================================================================
# ADAPTER FALSO (coordinator / registry)
# =============================================================================

class FakeAdapter:
    def __init__(self, device_id: str, config: MqttConfig, on_fatal, factory: "FakeAdapterFactory"):
        self.device_id = device_id
        self.config = config
        self.on_fatal = on_fatal
        self._factory = factory
        self.connected = False
        self.cancelled = False
        self.aborted = False
        self.disconnect_calls = 0

    async def connect(self) -> None:
        self._factory.actions.append(("connect", self.device_id, self.config.url))
        gate = self._factory.gates.get(self.device_id)
        try:
            if gate is not None:
                await gate.wait()
            if self._factory.connect_delay:
                await asyncio.sleep(self._factory.connect_delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        error = self._factory.connect_errors.get(self.device_id)
        if error is not None:
            raise error
        self.connected = True

    async def disconnect(self) -> None:
        self._factory.actions.append(("disconnect", self.device_id, self.config.url))
        self.disconnect_calls += 1
        if self._factory.disconnect_hang:
            await asyncio.Event().wait()
        self.connected = False

    def abort(self) -> None:
        self.aborted = True
        self.connected = False

    def drop(self, error: Exception) -> None:
        """Simula una caída inesperada del broker."""
        self.connected = False
        self.on_fatal(self, error)


class FakeAdapterFactory:
    def __init__(self) -> None:
        self.adapters: list[FakeAdapter] = []
        self.actions: list[tuple[str, str, str]] = []
        self.connect_errors: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.connect_delay = 0.0
        self.disconnect_hang = False

    def __call__(self, device_id: str, config: MqttConfig, on_fatal) -> FakeAdapter:
        adapter = FakeAdapter(device_id, config, on_fatal, self)
        self.adapters.append(adapter)
        return adapter

    def count(self, action: str, device_id: Optional[str] = None) -> int:
        return sum(1 for a, d, _ in self.actions if a == action and (device_id is None or d == device_id))

    def last(self, device_id: str) -> FakeAdapter:
        return [a for a in self.adapters if a.device_id == device_id][-1]


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()


async def start_coordinator(
    factory: FakeAdapterFactory,
    *,
    connect_timeout: float = 1.0,
    disconnect_timeout: float = 1.0,
    tombstone_ttl: float = 600.0,
) -> tuple[LifecycleCoordinator, LifecycleHooks]:
    registry = ConnectionRegistry(disconnect_timeout=disconnect_timeout)
    coordinator = LifecycleCoordinator(
        registry,
        factory,
        connect_timeout=connect_timeout,
        tombstone_ttl=tombstone_ttl,
    )
    await coordinator.start()
    return coordinator, LifecycleHooks(coordinator.publish)


def _doc(config: Optional[MqttConfig], name: str = "box") -> dict:
    integrations = {"mqtt": config.to_document()} if config is not None else {}
    return {"name": name, "integrations": integrations}


def commit(
    hooks: LifecycleHooks,
    device_id: str,
    previous: Optional[MqttConfig],
    current: Optional[MqttConfig],
    revision: int,
    *,
    previous_name: str = "box",
    name: str = "box",
):
    """Simula una escritura confirmada en el storage."""
    paths = changed_paths(_doc(previous, previous_name), _doc(current, name))
    change = hooks.on_before_save(device_id, paths, current, previous, revision)
    return hooks.on_after_save(device_id, current, revision, change=change)


def remove(hooks: LifecycleHooks, device_id: str):
    """Simula un DELETE confirmado en el storage."""
    event = hooks.on_before_remove(device_id)
    hooks.on_after_remove(event)
    return event


# =============================================================================
# CLIENTE PAHO FALSO (adapter)
# =============================================================================

class FakePahoClient:
    """Imita la API de paho.mqtt.client.Client usada por el adapter.

    Los callbacks se disparan desde ``loop_start`` / ``disconnect`` como lo
    haría el hilo de red.
    """

    def __init__(self, *, connack_rc: int = 0, suback_codes=(1,), connect_error: Optional[Exception] = None):
        self.connack_rc = connack_rc
        self.suback_codes = list(suback_codes)
        self.connect_error = connect_error

        self.on_connect = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.on_message = None

        self.factory_kwargs: dict = {}
        self.connect_args: Optional[tuple] = None
        self.credentials: Optional[tuple] = None
        self.ws_path: Optional[str] = None
        self.subscriptions: list[tuple[str, int]] = []
        self.loop_started = False
        self.loop_stopped = False
        self.disconnect_calls = 0
        self._connected = False
        self._mid = 0

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def ws_set_options(self, path="/mqtt", headers=None):
        self.ws_path = path

    def connect(self, host, port=1883, keepalive=60):
        if self.connect_error is not None:
            raise self.connect_error
        self.connect_args = (host, port, keepalive)
        return 0

    def loop_start(self):
        self.loop_started = True
        self._connected = self.connack_rc == 0
        self.on_connect(self, None, {}, self.connack_rc, None)
        if self._connected:
            self.on_subscribe(self, None, self._mid, self.suback_codes, None)

    def loop_stop(self):
        self.loop_stopped = True

    def subscribe(self, topic, qos=0):
        self._mid += 1
        self.subscriptions.append((topic, qos))
        return 0, self._mid

    def disconnect(self):
        self.disconnect_calls += 1
        if self._connected:
            self._connected = False
            self.on_disconnect(self, None, {}, 0, None)
        return 0

    # helpers de test
    def deliver(self, payload: bytes, topic: str = "boxes/1/readings") -> None:
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def drop(self, rc: int = 7) -> None:
        self._connected = False
        self.on_disconnect(self, None, {}, rc, None)


class FakeClientFactory:
    def __init__(self, client: FakePahoClient):
        self.client = client
        self.calls: list[dict] = []

    def __call__(self, **kwargs) -> FakePahoClient:
        self.calls.append(kwargs)
        self.client.factory_kwargs = kwargs
        return self.client


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
