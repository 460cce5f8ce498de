"""Estado de las conexiones MQTT vivas."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ..schemas import ConnectionOut, ConnectionStatusOut

router = APIRouter(prefix="/integrations/mqtt", tags=["mqtt"])


@router.get("/connections", response_model=ConnectionStatusOut)
def list_connections(request: Request) -> ConnectionStatusOut:
    return ConnectionStatusOut(**request.app.state.coordinator.status())


@router.get("/connections/{device_id}", response_model=ConnectionOut)
def get_connection(device_id: str, request: Request) -> ConnectionOut:
    entry = request.app.state.coordinator.registry.get(device_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No MQTT connection for device {device_id}")
    return ConnectionOut(**entry.to_dict())
