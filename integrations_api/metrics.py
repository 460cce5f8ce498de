"""Métricas Prometheus del ciclo de vida MQTT."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

MQTT_LIFECYCLE_TRANSITIONS = Counter(
    "integrations_mqtt_lifecycle_transitions_total",
    "Connection lifecycle actions issued by the coordinator",
    ["action"],  # connect, disconnect, connected, fatal
)

MQTT_REGISTRY_ENTRIES = Gauge(
    "integrations_mqtt_registry_entries",
    "Devices currently tracked in the connection registry",
)

MQTT_MESSAGES = Counter(
    "integrations_mqtt_messages_total",
    "Inbound MQTT messages by outcome",
    ["status"],  # forwarded, decode_error, dropped, sink_failed
)

LIFECYCLE_EVENTS = Counter(
    "integrations_lifecycle_events_total",
    "Storage events handled by the coordinator",
    ["event", "result"],  # result: applied, stale, ignored
)
