from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BoxCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    # Documento crudo: la validación agregada la hace el repositorio
    integrations: Optional[Dict[str, Any]] = None


class BoxUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    integrations: Optional[Dict[str, Any]] = None
    revision: Optional[int] = Field(default=None, ge=1)


class BoxOut(BaseModel):
    id: str
    name: str
    integrations: Dict[str, Any] = Field(default_factory=dict)
    revision: int
    created_at: str
    updated_at: str


class ConnectionOut(BaseModel):
    device_id: str
    state: str
    revision: int
    url: str
    topic: str
    message_format: str
    last_error: Optional[str] = None
    updated_at: float
    stats: Optional[Dict[str, Any]] = None


class ConnectionStatusOut(BaseModel):
    devices: int
    by_state: Dict[str, int] = Field(default_factory=dict)
    pending_events: int
    connections: List[ConnectionOut] = Field(default_factory=list)


class ValidationErrorOut(BaseModel):
    code: str = "UnprocessableEntity"
    message: str
    errors: Dict[str, str] = Field(default_factory=dict)
