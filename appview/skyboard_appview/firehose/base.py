"""
Base protocol and types for the record change stream.

This module defines the ChangeStream protocol that all backends must
implement, along with the ChangeEvent type and stream errors.

Invariants:
    - time_us is the resumption cursor: subscribing from cursor c yields
      every event with time_us > c that the backend still retains
    - Events for one repository arrive in commit order
    - Only commit events are surfaced; identity and account events are
      dropped by the backend

How to change safely:
    - Protocol changes require updating all implementations
    - Keep ChangeEvent.from_message() tolerant: unknown keys are ignored
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class ChangeStreamError(Exception):
    """Base exception for change stream operations."""

    pass


class ChangeStreamConnectionError(ChangeStreamError):
    """Connection to the change stream failed."""

    pass


class CursorTooStaleError(ChangeStreamError):
    """Requested cursor is older than the backend retains.

    Attributes:
        cursor: The rejected cursor (microseconds)
        oldest_available: Oldest cursor the backend can serve, if known
    """

    def __init__(self, cursor: int, oldest_available: int | None = None) -> None:
        super().__init__(f"Cursor {cursor} is older than the retained window")
        self.cursor = cursor
        self.oldest_available = oldest_available


class CommitOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A record commit from some principal's repository.

    Attributes:
        did: Repository owner
        time_us: Stream timestamp in microseconds (the cursor)
        operation: create, update or delete
        collection: Record collection NSID
        rkey: Record key
        record: Record value (None for deletes)
        rev: Repository revision, when provided
    """

    did: str
    time_us: int
    operation: CommitOperation
    collection: str
    rkey: str
    record: dict[str, Any] | None = None
    rev: str | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> ChangeEvent | None:
        """Parse a Jetstream message; None for non-commit or malformed ones."""
        if message.get("kind") != "commit":
            return None
        commit = message.get("commit") or {}
        try:
            operation = CommitOperation(commit.get("operation"))
            return cls(
                did=message["did"],
                time_us=int(message["time_us"]),
                operation=operation,
                collection=commit["collection"],
                rkey=commit["rkey"],
                record=commit.get("record") if operation != CommitOperation.DELETE else None,
                rev=commit.get("rev"),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed stream message: {e!r}")
            return None

    def to_message(self) -> dict[str, Any]:
        """Jetstream wire form of this event."""
        commit: dict[str, Any] = {
            "operation": self.operation.value,
            "collection": self.collection,
            "rkey": self.rkey,
        }
        if self.rev is not None:
            commit["rev"] = self.rev
        if self.record is not None:
            commit["record"] = self.record
        return {"did": self.did, "time_us": self.time_us, "kind": "commit", "commit": commit}


@dataclass
class StreamStats:
    """Counters kept by a stream backend."""

    events: int = 0
    reconnects: int = 0
    skipped: int = 0
    last_time_us: int | None = None


@runtime_checkable
class ChangeStream(Protocol):
    """Protocol for change stream backends.

    Ordering contract:
        - Events are yielded in ascending time_us
        - A subscriber that resumes from the last processed time_us sees
          no gaps, unless the cursor has aged out (CursorTooStaleError)

    Example:
        >>> stream = JetstreamChangeStream(config.jetstream)
        >>> await stream.connect()
        >>> async for event in stream.subscribe(cursor):
        ...     await handle(event)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            ChangeStreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the stream and release resources."""
        ...

    @abstractmethod
    def subscribe(self, cursor: int | None = None) -> AsyncIterator[ChangeEvent]:
        """Yield commit events after cursor (live tail when None).

        Raises:
            CursorTooStaleError: If cursor is outside the retained window
            ChangeStreamConnectionError: If the stream cannot be read
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_change_stream(config: ServerConfig) -> ChangeStream:
    """Factory function to create a change stream from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ChangeStreamBackend
    from .jetstream import JetstreamChangeStream
    from .memory import InMemoryChangeStream

    if config.change_stream_backend == ChangeStreamBackend.JETSTREAM:
        return JetstreamChangeStream(config.jetstream)
    elif config.change_stream_backend == ChangeStreamBackend.MEMORY:
        return InMemoryChangeStream()
    else:
        raise ValueError(f"Unsupported change stream backend: {config.change_stream_backend}")
