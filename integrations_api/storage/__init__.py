"""Persistencia de Boxes."""

from .box_repository import BoxRecord, BoxRepository, merge_integrations

__all__ = ["BoxRecord", "BoxRepository", "merge_integrations"]
