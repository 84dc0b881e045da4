"""
Change stream (firehose) for the Skyboard aggregator.

Backends:
- JetstreamChangeStream: Jetstream WebSocket consumer (production)
- InMemoryChangeStream: In-memory stream (tests, local development)
"""

from .base import (
    ChangeEvent,
    ChangeStream,
    ChangeStreamConnectionError,
    ChangeStreamError,
    CommitOperation,
    CursorTooStaleError,
    StreamStats,
    create_change_stream,
)
from .jetstream import JetstreamChangeStream
from .memory import InMemoryChangeStream

__all__ = [
    "ChangeEvent",
    "ChangeStream",
    "ChangeStreamConnectionError",
    "ChangeStreamError",
    "CommitOperation",
    "CursorTooStaleError",
    "StreamStats",
    "create_change_stream",
    "JetstreamChangeStream",
    "InMemoryChangeStream",
]
