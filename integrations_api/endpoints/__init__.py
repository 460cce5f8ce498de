"""Módulo de endpoints HTTP.

Contiene los endpoints de la API de integraciones organizados por función.
"""

from .boxes import router as boxes_router
from .connections import router as connections_router
from .health import router as health_router

__all__ = [
    "boxes_router",
    "connections_router",
    "health_router",
]
