"""Tests del coordinador de ciclo de vida MQTT.

Cubre:
1. connect / disconnect exactamente una vez por transición
2. eliminación sin entrada residual
3. escrituras no relacionadas sin acciones
4. toggles rápidos convergen al estado final
5. errores fatales, timeouts y auth sin reintento automático
6. revisiones viejas ignoradas y teardown durante el handshake
7. reconcile y shutdown

Ejecutar:
    pytest tests/test_lifecycle_coordinator.py -v
"""

import asyncio

import pytest

from integrations_api.errors import BrokerAuthError, BrokerConnectionError
from integrations_api.lifecycle.changes import MqttChange, MqttChangeReason
from integrations_api.lifecycle.coordinator import DeviceMqttState
from integrations_api.lifecycle.events import ConfigCommitted, DeviceRemoved
from integrations_api.lifecycle.registry import ConnectionRegistry, ConnectionState

from conftest import commit, mqtt_config, remove, settle, start_coordinator


# =============================================================================
# TRANSICIONES BÁSICAS
# =============================================================================

class TestTransitions:

    @pytest.mark.asyncio
    async def test_enable_issues_exactly_one_connect(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        config = mqtt_config(url="mqtt://h/", topic="t")

        commit(hooks, "box-1", None, config, revision=1)
        await coordinator.wait_idle()

        assert adapter_factory.count("connect") == 1
        entry = coordinator.registry.get("box-1")
        assert entry.state is ConnectionState.CONNECTED
        assert entry.config == config
        assert entry.revision == 1

    @pytest.mark.asyncio
    async def test_disable_issues_exactly_one_disconnect(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        config = mqtt_config()

        commit(hooks, "box-1", None, config, revision=1)
        await coordinator.wait_idle()
        commit(hooks, "box-1", config, mqtt_config(enabled=False), revision=2)
        await coordinator.wait_idle()

        assert adapter_factory.count("connect") == 1
        assert adapter_factory.count("disconnect") == 1
        assert "box-1" not in coordinator.registry

    @pytest.mark.asyncio
    async def test_reconfigure_tears_down_before_connecting(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        old = mqtt_config(url="mqtt://old/")
        new = mqtt_config(url="mqtt://new/")

        commit(hooks, "box-1", None, old, revision=1)
        await coordinator.wait_idle()
        commit(hooks, "box-1", old, new, revision=2)
        await coordinator.wait_idle()

        assert adapter_factory.actions == [
            ("connect", "box-1", "mqtt://old/"),
            ("disconnect", "box-1", "mqtt://old/"),
            ("connect", "box-1", "mqtt://new/"),
        ]
        assert len(coordinator.registry) == 1
        assert coordinator.registry.get("box-1").config == new

    @pytest.mark.asyncio
    async def test_unrelated_write_triggers_nothing(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        config = mqtt_config()

        commit(hooks, "box-1", None, config, revision=1)
        await coordinator.wait_idle()
        event = commit(hooks, "box-1", config, config, revision=2, previous_name="a", name="b")
        await coordinator.wait_idle()

        assert event is None
        assert adapter_factory.count("connect") == 1
        assert adapter_factory.count("disconnect") == 0

    @pytest.mark.asyncio
    async def test_disabled_edit_triggers_nothing(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)

        commit(hooks, "box-1", None, mqtt_config(enabled=False), revision=1)
        await coordinator.wait_idle()

        assert adapter_factory.actions == []
        assert len(coordinator.registry) == 0


# =============================================================================
# ELIMINACIÓN
# =============================================================================

class TestRemoval:

    @pytest.mark.asyncio
    async def test_remove_enabled_device(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)

        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()
        remove(hooks, "box-1")
        await coordinator.wait_idle()

        assert "box-1" not in coordinator.registry
        assert adapter_factory.count("disconnect") == 1

    @pytest.mark.asyncio
    async def test_remove_disabled_device(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)

        remove(hooks, "box-1")
        await coordinator.wait_idle()

        assert "box-1" not in coordinator.registry
        assert adapter_factory.actions == []

    @pytest.mark.asyncio
    async def test_late_event_after_removal_is_ignored(self, adapter_factory):
        coordinator, _ = await start_coordinator(adapter_factory)

        await coordinator.handle(DeviceRemoved("box-1"))
        await coordinator.handle(
            ConfigCommitted("box-1", 5, MqttChange(MqttChangeReason.ENABLED, None, mqtt_config()))
        )
        await coordinator.wait_idle()

        assert "box-1" not in coordinator.registry
        assert adapter_factory.actions == []

    @pytest.mark.asyncio
    async def test_remove_during_handshake(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.gates["box-1"] = asyncio.Event()

        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await settle()
        remove(hooks, "box-1")
        await coordinator.wait_idle()

        adapter = adapter_factory.last("box-1")
        assert adapter.cancelled is True
        assert adapter.connected is False
        assert "box-1" not in coordinator.registry


    @pytest.mark.asyncio
    async def test_removed_device_releases_its_lock(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)

        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()
        assert "box-1" in coordinator.registry._locks

        remove(hooks, "box-1")
        await coordinator.wait_idle()

        assert "box-1" not in coordinator.registry._locks

    @pytest.mark.asyncio
    async def test_tombstones_expire(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory, tombstone_ttl=0.0)

        remove(hooks, "box-1")
        await coordinator.wait_idle()
        await coordinator.reconcile([])

        assert coordinator._tombstones == {}


# =============================================================================
# ORDEN Y CONCURRENCIA
# =============================================================================

class TestOrdering:

    @pytest.mark.asyncio
    async def test_device_lock_serializes_holders(self):
        registry = ConnectionRegistry()
        order = []

        async def worker(n):
            async with registry.hold("box-1"):
                order.append(("in", n))
                await asyncio.sleep(0)
                order.append(("out", n))

        await asyncio.gather(*(worker(n) for n in range(3)))

        assert order == [("in", 0), ("out", 0), ("in", 1), ("out", 1), ("in", 2), ("out", 2)]
        assert "box-1" not in registry._locks

    @pytest.mark.asyncio
    async def test_rapid_toggle_converges_to_connected(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.connect_delay = 0.01
        on = mqtt_config()
        off = mqtt_config(enabled=False)

        commit(hooks, "box-1", None, on, revision=1)
        commit(hooks, "box-1", on, off, revision=2)
        commit(hooks, "box-1", off, on, revision=3)
        await coordinator.wait_idle()

        entry = coordinator.registry.get("box-1")
        assert entry.state is ConnectionState.CONNECTED
        assert entry.revision == 3
        assert len(coordinator.registry) == 1
        assert adapter_factory.last("box-1").connected is True
        assert sum(1 for a in adapter_factory.adapters if a.connected) == 1

    @pytest.mark.asyncio
    async def test_stale_revision_is_ignored(self, adapter_factory):
        coordinator, _ = await start_coordinator(adapter_factory)
        newer = mqtt_config(topic="new")
        older = mqtt_config(topic="old")

        await coordinator.handle(ConfigCommitted("box-1", 3, MqttChange(MqttChangeReason.ENABLED, None, newer)))
        await coordinator.handle(ConfigCommitted("box-1", 2, MqttChange(MqttChangeReason.ENABLED, None, older)))
        await coordinator.wait_idle()

        assert adapter_factory.count("connect") == 1
        assert coordinator.registry.get("box-1").config == newer

    @pytest.mark.asyncio
    async def test_disable_during_handshake_never_ends_connected(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.gates["box-1"] = asyncio.Event()
        on = mqtt_config()

        commit(hooks, "box-1", None, on, revision=1)
        await settle()
        assert coordinator.registry.get("box-1").state is ConnectionState.CONNECTING

        commit(hooks, "box-1", on, mqtt_config(enabled=False), revision=2)
        await coordinator.wait_idle()
        adapter_factory.gates["box-1"].set()
        await settle()

        assert adapter_factory.last("box-1").connected is False
        assert "box-1" not in coordinator.registry

    @pytest.mark.asyncio
    async def test_devices_do_not_block_each_other(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.gates["slow"] = asyncio.Event()

        commit(hooks, "slow", None, mqtt_config(), revision=1)
        commit(hooks, "fast", None, mqtt_config(), revision=1)
        for _ in range(50):
            await asyncio.sleep(0)
            entry = coordinator.registry.get("fast")
            if entry is not None and entry.state is ConnectionState.CONNECTED:
                break

        assert coordinator.registry.get("fast").state is ConnectionState.CONNECTED
        assert coordinator.registry.get("slow").state is ConnectionState.CONNECTING

        adapter_factory.gates["slow"].set()
        await coordinator.wait_idle()
        assert coordinator.registry.get("slow").state is ConnectionState.CONNECTED


# =============================================================================
# ERRORES FATALES
# =============================================================================

class TestFatalErrors:

    @pytest.mark.asyncio
    async def test_broker_unreachable_leaves_disconnected_entry(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.connect_errors["box-1"] = BrokerConnectionError("Broker h:1883 unreachable")
        config = mqtt_config()

        commit(hooks, "box-1", None, config, revision=1)
        await coordinator.wait_idle()

        entry = coordinator.registry.get("box-1")
        assert entry.state is ConnectionState.DISCONNECTED
        assert "unreachable" in entry.last_error
        assert entry.auth_failed is False

        # escritura no relacionada: sin reintento
        commit(hooks, "box-1", config, config, revision=2, previous_name="a", name="b")
        await coordinator.wait_idle()
        assert adapter_factory.count("connect") == 1

    @pytest.mark.asyncio
    async def test_next_mqtt_write_retries(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.connect_errors["box-1"] = BrokerConnectionError("refused")
        old = mqtt_config()
        new = mqtt_config(topic="fixed")

        commit(hooks, "box-1", None, old, revision=1)
        await coordinator.wait_idle()
        del adapter_factory.connect_errors["box-1"]
        commit(hooks, "box-1", old, new, revision=2)
        await coordinator.wait_idle()

        assert adapter_factory.count("connect") == 2
        assert coordinator.registry.get("box-1").state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_auth_failure_is_flagged(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.connect_errors["box-1"] = BrokerAuthError("Broker rejected credentials: rc=5", reason_code=5)

        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()

        entry = coordinator.registry.get("box-1")
        assert entry.state is ConnectionState.DISCONNECTED
        assert entry.auth_failed is True

    @pytest.mark.asyncio
    async def test_connect_timeout_is_fatal(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory, connect_timeout=0.05)
        adapter_factory.gates["box-1"] = asyncio.Event()

        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()

        entry = coordinator.registry.get("box-1")
        assert entry.state is ConnectionState.DISCONNECTED
        assert "timed out" in entry.last_error
        assert adapter_factory.last("box-1").cancelled is True

    @pytest.mark.asyncio
    async def test_unexpected_disconnect_is_not_retried(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)

        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()
        adapter_factory.last("box-1").drop(BrokerConnectionError("Unexpected disconnect from broker: rc=7"))
        await coordinator.wait_idle()

        entry = coordinator.registry.get("box-1")
        assert entry.state is ConnectionState.DISCONNECTED
        assert "Unexpected disconnect" in entry.last_error
        assert adapter_factory.count("connect") == 1

    @pytest.mark.asyncio
    async def test_hanging_disconnect_is_aborted(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory, disconnect_timeout=0.05)
        config = mqtt_config()

        commit(hooks, "box-1", None, config, revision=1)
        await coordinator.wait_idle()
        adapter_factory.disconnect_hang = True
        commit(hooks, "box-1", config, mqtt_config(enabled=False), revision=2)
        await coordinator.wait_idle()

        assert adapter_factory.last("box-1").aborted is True
        assert "box-1" not in coordinator.registry


# =============================================================================
# RECONCILE Y SHUTDOWN
# =============================================================================

class TestReconcileAndShutdown:

    @pytest.mark.asyncio
    async def test_reconcile_connects_and_tears_down(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        config = mqtt_config()
        commit(hooks, "stale", None, config, revision=1)
        commit(hooks, "disabled", None, config, revision=1)
        await coordinator.wait_idle()

        summary = await coordinator.reconcile([
            DeviceMqttState("new", mqtt_config(), 1),
            DeviceMqttState("disabled", mqtt_config(enabled=False), 2),
        ])
        await coordinator.wait_idle()

        assert summary["connected"] == 1
        assert summary["disconnected"] == 2
        assert coordinator.registry.device_ids() == ["new"]
        assert coordinator.registry.get("new").state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_reconcile_leaves_live_entries_alone(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        config = mqtt_config()
        commit(hooks, "box-1", None, config, revision=1)
        await coordinator.wait_idle()

        summary = await coordinator.reconcile([DeviceMqttState("box-1", config, 1)])

        assert summary["unchanged"] == 1
        assert adapter_factory.count("connect") == 1

    @pytest.mark.asyncio
    async def test_reconcile_retries_failures_but_not_auth(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        adapter_factory.connect_errors["net"] = BrokerConnectionError("unreachable")
        adapter_factory.connect_errors["auth"] = BrokerAuthError("rejected", reason_code=5)
        config = mqtt_config()
        commit(hooks, "net", None, config, revision=1)
        commit(hooks, "auth", None, config, revision=1)
        await coordinator.wait_idle()
        adapter_factory.connect_errors.clear()

        await coordinator.reconcile([DeviceMqttState("net", config, 1), DeviceMqttState("auth", config, 1)])
        await coordinator.wait_idle()

        assert coordinator.registry.get("net").state is ConnectionState.CONNECTED
        assert coordinator.registry.get("auth").state is ConnectionState.DISCONNECTED
        assert adapter_factory.count("connect", "auth") == 1

    @pytest.mark.asyncio
    async def test_reconcile_skips_entries_newer_than_snapshot(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        as_of = 0.0
        commit(hooks, "box-1", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()

        summary = await coordinator.reconcile([], as_of=as_of)

        assert summary["skipped"] == 1
        assert "box-1" in coordinator.registry

    @pytest.mark.asyncio
    async def test_stop_disconnects_everything(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        commit(hooks, "a", None, mqtt_config(), revision=1)
        commit(hooks, "b", None, mqtt_config(), revision=1)
        await coordinator.wait_idle()

        await coordinator.stop()

        assert len(coordinator.registry) == 0
        assert coordinator.registry.is_closed is True
        assert adapter_factory.count("disconnect") == 2

        # eventos después del stop se ignoran
        commit(hooks, "c", None, mqtt_config(), revision=1)
        await settle()
        assert adapter_factory.count("connect", "c") == 0

    @pytest.mark.asyncio
    async def test_status_snapshot(self, adapter_factory):
        coordinator, hooks = await start_coordinator(adapter_factory)
        commit(hooks, "box-1", None, mqtt_config(topic="t1"), revision=1)
        await coordinator.wait_idle()

        status = coordinator.status()

        assert status["devices"] == 1
        assert status["by_state"] == {"connected": 1}
        assert status["connections"][0]["topic"] == "t1"
