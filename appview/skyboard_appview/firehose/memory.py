"""
In-memory change stream for tests and local development.

Invariants:
    - All data is lost on process exit
    - time_us is strictly increasing across published events
    - Events older than the eviction point are gone; resuming from a
      cursor before it raises CursorTooStaleError, like an upstream that
      has aged the cursor out

How to change safely:
    - Keep interface compatible with the ChangeStream protocol
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator

from .base import (
    ChangeEvent,
    ChangeStreamConnectionError,
    CommitOperation,
    CursorTooStaleError,
    StreamStats,
)

logger = logging.getLogger(__name__)


class InMemoryChangeStream:
    """In-memory implementation of ChangeStream.

    Example:
        >>> stream = InMemoryChangeStream()
        >>> await stream.connect()
        >>> stream.publish("did:plc:alice", TASK, "3k2a", record)
        >>> async for event in stream.subscribe(None):
        ...     print(event.rkey)
    """

    def __init__(self, poll_timeout: float = 0.1, replay_retained: bool = True) -> None:
        """Initialize the stream.

        Args:
            replay_retained: A None cursor replays every retained event
                instead of starting at the live tail
            poll_timeout: How long subscribers wait for new events before
                re-checking whether the stream was closed
        """
        self.poll_timeout = poll_timeout
        self.replay_retained = replay_retained
        self._events: list[ChangeEvent] = []
        self._evicted_before: int | None = None
        self._last_time_us = 0
        self._connected = False
        self._new_event = asyncio.Event()
        self.stats = StreamStats()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryChangeStream connected")

    async def close(self) -> None:
        """Close; active subscribers finish their current wait and stop."""
        self._connected = False
        self._new_event.set()
        logger.debug("InMemoryChangeStream closed")

    def _next_time_us(self, time_us: int | None) -> int:
        if time_us is None:
            time_us = time.time_ns() // 1000
        time_us = max(time_us, self._last_time_us + 1)
        self._last_time_us = time_us
        return time_us

    def publish(
        self,
        did: str,
        collection: str,
        rkey: str,
        record: dict[str, Any] | None = None,
        operation: CommitOperation | None = None,
        time_us: int | None = None,
    ) -> ChangeEvent:
        """Append a commit event.

        The operation defaults to create, or delete when record is None.
        """
        if operation is None:
            operation = CommitOperation.CREATE if record is not None else CommitOperation.DELETE
        event = ChangeEvent(
            did=did,
            time_us=self._next_time_us(time_us),
            operation=operation,
            collection=collection,
            rkey=rkey,
            record=record,
        )
        self._events.append(event)
        self._new_event.set()
        return event

    def publish_message(self, message: dict[str, Any]) -> ChangeEvent | None:
        """Append a raw Jetstream message; non-commit messages are dropped."""
        event = ChangeEvent.from_message(message)
        if event is None:
            self.stats.skipped += 1
            return None
        self._last_time_us = max(self._last_time_us, event.time_us)
        self._events.append(event)
        self._new_event.set()
        return event

    def evict_before(self, time_us: int) -> int:
        """Drop events older than time_us (testing helper).

        Returns:
            Number of events dropped
        """
        before = len(self._events)
        self._events = [e for e in self._events if e.time_us >= time_us]
        self._evicted_before = max(self._evicted_before or 0, time_us)
        return before - len(self._events)

    async def subscribe(self, cursor: int | None = None) -> AsyncIterator[ChangeEvent]:
        """Yield events after cursor, then wait for new ones until closed.

        A None cursor starts at the live tail unless replay_retained is set.
        """
        if not self._connected:
            raise ChangeStreamConnectionError("Not connected")
        if cursor is not None and self._evicted_before is not None and cursor < self._evicted_before:
            raise CursorTooStaleError(cursor, oldest_available=self._evicted_before)

        if cursor is not None:
            position = cursor
        else:
            position = 0 if self.replay_retained else self._last_time_us
        while self._connected:
            batch = [e for e in self._events if e.time_us > position]
            if not batch:
                self._new_event.clear()
                try:
                    await asyncio.wait_for(self._new_event.wait(), timeout=self.poll_timeout)
                except asyncio.TimeoutError:
                    pass
                continue
            for event in batch:
                position = event.time_us
                self.stats.events += 1
                self.stats.last_time_us = event.time_us
                yield event

    def get_all_events(self) -> list[ChangeEvent]:
        """All retained events (testing helper)."""
        return list(self._events)
