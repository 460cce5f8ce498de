from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from common.config import Settings, get_settings
from common.db import get_engine
from .endpoints import boxes_router, connections_router, health_router
from .errors import BoxNotFoundError, ConcurrentUpdateError, IntegrationValidationError
from .ingestion.sink import IngestionSink, InMemoryIngestionSink, RedisStreamSink
from .lifecycle.coordinator import AdapterFactory, LifecycleCoordinator
from .lifecycle.events import LifecycleHooks
from .lifecycle.registry import ConnectionRegistry
from .models.integrations import MqttConfig
from .mqtt.client import MQTTClientAdapter
from .mqtt.queue_config import QueueConfig
from .storage.box_repository import BoxRepository

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_sink(settings: Settings) -> IngestionSink:
    """Redis Stream si hay REDIS_URL; si no, cola en memoria (dev)."""
    if settings.redis_url:
        sink = RedisStreamSink(
            settings.redis_url,
            stream_name=settings.redis_stream,
            max_len=settings.redis_max_len,
        )
        if not sink.connect():
            logger.warning("[INGEST] Redis unavailable, readings will be counted as failed until it recovers")
        return sink

    logger.warning("[INGEST] REDIS_URL not set, using in-memory ingestion queue (DEV ONLY)")
    return InMemoryIngestionSink(maxsize=settings.ingestion_queue_size)


def build_adapter_factory(
    sink: IngestionSink,
    settings: Settings,
    client_factory: Optional[Callable[..., Any]] = None,
) -> AdapterFactory:
    queue_config = QueueConfig(
        max_queue_size=settings.mqtt_queue_size,
        drop_oldest=settings.mqtt_drop_oldest,
    )

    def factory(device_id: str, config: MqttConfig, on_fatal) -> MQTTClientAdapter:
        return MQTTClientAdapter(
            device_id,
            config,
            sink,
            queue_config=queue_config,
            keepalive=settings.mqtt_keepalive,
            on_fatal=on_fatal,
            client_factory=client_factory,
        )

    return factory


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings

    engine = get_engine(settings)
    sink = app.state.sink_override if app.state.sink_override is not None else build_sink(settings)
    adapter_factory = app.state.adapter_factory_override or build_adapter_factory(sink, settings)

    registry = ConnectionRegistry(disconnect_timeout=settings.mqtt_disconnect_timeout)
    coordinator = LifecycleCoordinator(
        registry,
        adapter_factory,
        connect_timeout=settings.mqtt_connect_timeout,
        tombstone_ttl=settings.tombstone_ttl_seconds,
    )
    hooks = LifecycleHooks(coordinator.publish)
    repository = BoxRepository(engine, hooks)
    repository.ensure_schema()

    app.state.engine = engine
    app.state.sink = sink
    app.state.registry = registry
    app.state.coordinator = coordinator
    app.state.repository = repository

    await coordinator.start()
    # Conexiones de Boxes ya habilitados al arrancar el proceso
    as_of = time.time()
    await coordinator.reconcile(await asyncio.to_thread(repository.list_mqtt_states), as_of=as_of)
    coordinator.start_reconcile_loop(
        lambda: asyncio.to_thread(repository.list_mqtt_states),
        settings.reconcile_interval_seconds,
    )
    logger.info("[APP] Integrations service started")

    try:
        yield
    finally:
        await coordinator.stop()
        if isinstance(sink, RedisStreamSink):
            sink.close()
        engine.dispose()
        logger.info("[APP] Integrations service stopped")


def _validation_error_handler(request: Request, exc: IntegrationValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"code": "UnprocessableEntity", "message": str(exc), "errors": exc.errors},
    )


def _not_found_handler(request: Request, exc: BoxNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"code": "NotFound", "message": str(exc)})


def _conflict_handler(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"code": "Conflict", "message": str(exc)})


def create_app(
    settings: Optional[Settings] = None,
    *,
    adapter_factory: Optional[AdapterFactory] = None,
    sink: Optional[IngestionSink] = None,
) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(settings.log_level)

    app = FastAPI(title="Box Integrations Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.adapter_factory_override = adapter_factory
    app.state.sink_override = sink

    app.add_exception_handler(IntegrationValidationError, _validation_error_handler)
    app.add_exception_handler(BoxNotFoundError, _not_found_handler)
    app.add_exception_handler(ConcurrentUpdateError, _conflict_handler)

    app.include_router(health_router)
    app.include_router(boxes_router)
    app.include_router(connections_router)
    return app


app = create_app()
