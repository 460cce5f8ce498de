"""Handoff hacia el pipeline de ingesta (colaborador externo)."""

from .sink import IngestionSink, InMemoryIngestionSink, ReadingSubmission, RedisStreamSink

__all__ = [
    "IngestionSink",
    "InMemoryIngestionSink",
    "ReadingSubmission",
    "RedisStreamSink",
]
