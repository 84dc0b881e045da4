"""
Firehose ingester: change stream -> aggregator store -> notifications.

The ingester is the aggregator's write path:
1. Resume the change stream from the persisted cursor
2. Validate each record and upsert or delete it
3. Notify subscribers of the affected board
4. Persist the cursor periodically and on stop

Materialization does not happen here. Records may arrive in any order
(an op before its task); boards are folded lazily at read time.

Invariants:
    - Invalid records are logged and skipped; they never stop the loop
    - A record that fails to store is retried with backoff; if it still
      fails the loop stops without advancing the cursor past it
    - The persisted cursor never runs ahead of processed events
    - A cursor older than the retention window, or one the stream
      rejects, triggers a reconciliation sweep of every known board and
      consumption restarts from the live tail

How to change safely:
    - Keep apply_event() free of stream concerns so it can be tested
      without a stream
    - New collections need a table in the record store first
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from sdk.skyboard_sdk.errors import SkyboardError
from sdk.skyboard_sdk.store import RECORD_TABLES
from sdk.skyboard_sdk.uris import BOARD, build_uri
from sdk.skyboard_sdk.validate import validate_record

from ..backfill.backfiller import Backfiller, ReconcileResult
from ..firehose.base import ChangeEvent, ChangeStream, CommitOperation, CursorTooStaleError
from ..notify.subscriptions import BoardNotifier
from .aggregator_store import AggregatorStore

logger = logging.getLogger(__name__)

DEFAULT_CURSOR_MAX_AGE_US = 48 * 60 * 60 * 1_000_000


def _now_us() -> int:
    return time.time_ns() // 1000


class IngestError(SkyboardError):
    """A change event could not be stored after all retries."""

    def __init__(self, message: str, event: ChangeEvent) -> None:
        super().__init__(message, code="INGEST_ERROR", details={"time_us": event.time_us})
        self.event = event


@dataclass
class IngestResult:
    """Result of applying one change event.

    Attributes:
        success: Whether the event was stored or deleted
        event: The change event
        board_uri: Board the event touched, when known
        skipped: Event ignored (foreign collection or invalid record)
        error: Error message if failed
    """

    success: bool
    event: ChangeEvent
    board_uri: str | None = None
    skipped: bool = False
    error: str | None = None


class Ingester:
    """Consumes the change stream into the aggregator store.

    Thread safety:
        The Ingester is designed to run as a single task.

    Example:
        >>> ingester = Ingester(stream, store, notifier, backfiller)
        >>> await ingester.start()  # Runs until stopped
    """

    def __init__(
        self,
        stream: ChangeStream,
        store: AggregatorStore,
        notifier: BoardNotifier,
        backfiller: Backfiller | None = None,
        cursor_save_interval: float = 5.0,
        cursor_max_age_us: int = DEFAULT_CURSOR_MAX_AGE_US,
        apply_attempts: int = 5,
        retry_backoff: float = 0.1,
        clock_us: Callable[[], int] = _now_us,
    ) -> None:
        """Initialize the ingester.

        Args:
            stream: Change stream to consume
            store: Aggregator store
            notifier: Board change notifier
            backfiller: Used for reconciliation sweeps
            cursor_save_interval: Seconds between cursor saves
            cursor_max_age_us: Cursors older than this are stale
            clock_us: Current time in microseconds
            apply_attempts: Tries per event before the loop gives up
            retry_backoff: First delay between tries, doubled each time
        """
        self.stream = stream
        self.store = store
        self.notifier = notifier
        self.backfiller = backfiller
        self.cursor_save_interval = cursor_save_interval
        self.cursor_max_age_us = cursor_max_age_us
        self._clock_us = clock_us
        self.apply_attempts = max(1, apply_attempts)
        self.retry_backoff = retry_backoff

        self._running = False
        self._cursor: int | None = None
        self._saved_cursor: int | None = None
        self._processed_count = 0
        self._skipped_count = 0
        self._error_count = 0
        self._saver_task: asyncio.Task[None] | None = None
        self.reconciliation_task: asyncio.Task[ReconcileResult | None] | None = None

    @property
    def cursor(self) -> int | None:
        return self._cursor

    def is_stale(self, cursor: int | None) -> bool:
        """Whether a persisted cursor is too old to resume from."""
        if cursor is None:
            return False
        return self._clock_us() - cursor > self.cursor_max_age_us

    async def start(self) -> None:
        """Start the ingest loop.

        This runs until stop() is called or the stream ends.
        """
        if self._running:
            logger.warning("Ingester already running")
            return

        self._running = True
        cursor = await self.store.load_cursor()
        if self.is_stale(cursor):
            logger.warning(
                "Persisted cursor is stale, starting live and reconciling",
                extra={"cursor": cursor},
            )
            cursor = None
            self._schedule_reconciliation()
        self._cursor = self._saved_cursor = cursor
        self._saver_task = asyncio.create_task(self._save_cursor_periodically())
        logger.info("Starting ingester", extra={"cursor": cursor})

        try:
            while self._running:
                try:
                    async for event in self.stream.subscribe(cursor):
                        if not self._running:
                            break
                        await self._handle(event)
                    break
                except CursorTooStaleError as e:
                    logger.warning(f"Change stream rejected cursor: {e}")
                    cursor = None
                    self._schedule_reconciliation()

        except asyncio.CancelledError:
            logger.info("Ingester cancelled")
        except Exception as e:
            logger.error(f"Ingester error: {e}", exc_info=True)
            raise

        finally:
            self._running = False
            if self._saver_task is not None:
                self._saver_task.cancel()
                self._saver_task = None
            await self.save_cursor()

    async def stop(self) -> None:
        """Stop the ingest loop and persist the cursor."""
        self._running = False
        logger.info("Stopping ingester")
        if self.reconciliation_task is not None and not self.reconciliation_task.done():
            self.reconciliation_task.cancel()
        await self.save_cursor()

    async def _handle(self, event: ChangeEvent) -> None:
        delay = self.retry_backoff
        for attempt in range(1, self.apply_attempts + 1):
            result = await self.apply_event(event)
            if result.success or result.skipped or attempt == self.apply_attempts:
                break
            logger.warning(
                "Retrying change event",
                extra={"rkey": event.rkey, "attempt": attempt, "error": result.error},
            )
            await asyncio.sleep(delay)
            delay *= 2

        if result.success:
            self._processed_count += 1
        elif result.skipped:
            self._skipped_count += 1
        else:
            self._error_count += 1
            logger.error(
                "Failed to apply change event",
                extra={
                    "did": event.did,
                    "collection": event.collection,
                    "rkey": event.rkey,
                    "error": result.error,
                },
            )
            raise IngestError(
                f"Could not apply {event.collection}/{event.rkey} after {attempt} attempts",
                event,
            )
        self._cursor = event.time_us

    async def apply_event(self, event: ChangeEvent) -> IngestResult:
        """Apply a single change event to the store and notify its board.

        This is the core ingest logic, separate from the stream
        consumption loop for testability.
        """
        if event.collection not in RECORD_TABLES:
            return IngestResult(success=False, event=event, skipped=True)

        try:
            if event.operation == CommitOperation.DELETE:
                board_uri = await self.store.delete_record(event.collection, event.did, event.rkey)
                if event.collection == BOARD:
                    board_uri = build_uri(event.did, BOARD, event.rkey)
            else:
                validated = validate_record(event.collection, event.record)
                if validated is None:
                    return IngestResult(
                        success=False, event=event, skipped=True, error="invalid record"
                    )
                board_uri = await self.store.upsert_record(
                    event.collection, event.did, event.rkey, validated
                )
        except Exception as e:
            logger.error(f"Error applying change event: {e}", exc_info=True)
            return IngestResult(success=False, event=event, error=str(e))

        if board_uri is not None:
            self.notifier.notify(board_uri)
        return IngestResult(success=True, event=event, board_uri=board_uri)

    def _schedule_reconciliation(self) -> None:
        if self.reconciliation_task is not None and not self.reconciliation_task.done():
            return
        self.reconciliation_task = asyncio.create_task(self.reconcile())

    async def reconcile(self) -> ReconcileResult | None:
        """Backfill and notify every known board."""
        if self.backfiller is None:
            logger.error("Cursor is stale but no backfiller is configured; updates may be missing")
            return None
        result = await self.backfiller.reconcile_all(on_board=self.notifier.notify)
        logger.info(
            "Reconciliation finished",
            extra={"boards": result.boards, "failed": len(result.failed)},
        )
        return result

    async def save_cursor(self) -> None:
        """Persist the cursor if it moved since the last save."""
        cursor = self._cursor
        if cursor is None or cursor == self._saved_cursor:
            return
        await self.store.save_cursor(cursor)
        self._saved_cursor = cursor
        logger.debug("Saved cursor", extra={"cursor": cursor})

    async def _save_cursor_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.cursor_save_interval)
            try:
                await self.save_cursor()
            except Exception as e:
                logger.error(f"Cursor save failed: {e}", exc_info=True)

    @property
    def stats(self) -> dict[str, Any]:
        """Get ingester statistics."""
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "skipped_count": self._skipped_count,
            "error_count": self._error_count,
            "cursor": self._cursor,
        }
