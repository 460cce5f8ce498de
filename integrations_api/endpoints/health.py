"""Health, readiness y métricas."""

import logging

from fastapi import APIRouter, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from common.db import check_connection

router = APIRouter(tags=["health"])

logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    """Liveness probe: always returns ok if process is running."""
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    """Readiness probe: checks DB connectivity and the connection registry."""
    if request.app.state.coordinator.registry.is_closed:
        raise HTTPException(status_code=503, detail="not ready")
    if not check_connection(request.app.state.engine):
        logger.error("Readiness check failed: database unreachable")
        raise HTTPException(status_code=503, detail="not ready")

    sink_stats = getattr(request.app.state.sink, "stats", None)
    return {
        "status": "ready",
        "mqtt_connections": len(request.app.state.coordinator.registry),
        "ingestion": sink_stats if isinstance(sink_stats, dict) else None,
    }


@router.get("/metrics")
def metrics():
    """Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
