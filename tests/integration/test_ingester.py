"""
Integration tests for the Ingester with the in-memory change stream.

Tests cover:
- End-to-end ingest into the aggregator store
- Board notifications per event
- Invalid records skipped without stopping the loop
- Store failures retried; persistent failures stop without advancing the cursor
- Cursor persistence and resume
- Stale cursor reconciliation sweep
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from appview.skyboard_appview.apply import AggregatorStore, IngestError, Ingester
from appview.skyboard_appview.backfill import ReconcileResult
from appview.skyboard_appview.firehose import InMemoryChangeStream
from appview.skyboard_appview.notify import BoardNotifier, SubscriptionState
from sdk.skyboard_sdk.errors import StoreBusyError
from sdk.skyboard_sdk.uris import BOARD, OP, TASK, TRUST
from tests.factories import (
    ALICE,
    BOB,
    board_record,
    board_uri,
    op_record,
    task_record,
    task_uri,
    trust_record,
    ts,
)

HOUR_US = 3600 * 1_000_000


class FakeBackfiller:
    """Records reconciliation sweeps."""

    def __init__(self, store):
        self.store = store
        self.sweeps = 0

    async def reconcile_all(self, on_board=None):
        self.sweeps += 1
        uris = await self.store.list_board_uris()
        for uri in uris:
            if on_board is not None:
                on_board(uri)
        return ReconcileResult(boards=len(uris), refreshed=list(uris))


class FlakyStore(AggregatorStore):
    """Aggregator store whose upserts report a locked database."""

    def __init__(self, db_path, failures, **kwargs):
        super().__init__(db_path, **kwargs)
        self.failures = failures
        self.fail_rkey = None
        self.calls = 0

    async def upsert_record(self, collection, did, rkey, value):
        self.calls += 1
        if self.failures > 0 and self.fail_rkey in (None, rkey):
            self.failures -= 1
            raise StoreBusyError("database is locked", attempts=3)
        return await super().upsert_record(collection, did, rkey, value)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestIngesterIntegration:
    """Integration tests for Ingester."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return AggregatorStore(str(Path(data_dir) / "appview.db"), wal_mode=False)

    @pytest.fixture
    def stream(self):
        return InMemoryChangeStream(poll_timeout=0.01)

    @pytest.fixture
    def notifier(self):
        return BoardNotifier()

    def _publish_board(self, stream):
        uri = board_uri()
        stream.publish(ALICE, BOARD, "board1", board_record())
        stream.publish(ALICE, TRUST, "tr1", trust_record(uri, BOB))
        stream.publish(ALICE, TASK, "t1", task_record(uri, title="Fix bug", created_at=ts(0)))
        stream.publish(
            BOB, OP, "o1", op_record(uri, task_uri(ALICE, "t1"), {"title": "Fix login bug"}, ts(1))
        )
        return uri

    @pytest.mark.asyncio
    async def test_end_to_end(self, store, stream, notifier):
        """Events land in the store and fold on read."""
        await store.initialize()
        await stream.connect()
        ingester = Ingester(stream, store, notifier)
        uri = self._publish_board(stream)

        task = asyncio.create_task(ingester.start())
        try:
            await _wait_for(lambda: ingester.stats["processed_count"] == 4)
        finally:
            await stream.close()
            await task

        tasks = await store.materialize_board(uri)
        assert [t.effective_title for t in tasks] == ["Fix login bug"]
        assert tasks[0].last_modified_by == BOB

    @pytest.mark.asyncio
    async def test_apply_event_notifies_board(self, store, stream, notifier):
        """Each stored event notifies its board."""
        await store.initialize()
        await stream.connect()
        ingester = Ingester(stream, store, notifier)
        uri = board_uri()
        sub = notifier.subscribe(uri)

        event = stream.publish(ALICE, TASK, "t1", task_record(uri))
        result = await ingester.apply_event(event)

        assert result.success
        assert result.board_uri == uri
        assert sub.state is SubscriptionState.NOTIFIED

    @pytest.mark.asyncio
    async def test_delete_notifies_board(self, store, stream, notifier):
        """Deletes notify the board the record belonged to."""
        await store.initialize()
        ingester = Ingester(stream, store, notifier)
        uri = board_uri()
        await ingester.apply_event(stream.publish(ALICE, TASK, "t1", task_record(uri)))
        sub = notifier.subscribe(uri)

        result = await ingester.apply_event(stream.publish(ALICE, TASK, "t1"))

        assert result.success
        assert result.board_uri == uri
        assert sub.state is SubscriptionState.NOTIFIED
        assert await store.get_record(TASK, ALICE, "t1") is None

    @pytest.mark.asyncio
    async def test_board_delete_notifies_board(self, store, stream, notifier):
        """Deleting a board notifies its own subscribers."""
        await store.initialize()
        ingester = Ingester(stream, store, notifier)
        await ingester.apply_event(stream.publish(ALICE, BOARD, "board1", board_record()))
        sub = notifier.subscribe(board_uri())

        result = await ingester.apply_event(stream.publish(ALICE, BOARD, "board1"))

        assert result.board_uri == board_uri()
        assert sub.state is SubscriptionState.NOTIFIED

    @pytest.mark.asyncio
    async def test_invalid_record_skipped(self, store, stream, notifier):
        """Invalid records are skipped and ingest continues."""
        await store.initialize()
        await stream.connect()
        ingester = Ingester(stream, store, notifier)
        uri = board_uri()
        stream.publish(ALICE, TASK, "bad", {"title": "no column", "boardUri": uri})
        stream.publish(ALICE, TASK, "order", task_record(uri, order=99999))
        stream.publish(ALICE, "app.bsky.feed.post", "p1", {"text": "hello"})
        stream.publish(ALICE, TASK, "good", task_record(uri))

        task = asyncio.create_task(ingester.start())
        try:
            await _wait_for(lambda: ingester.stats["processed_count"] == 1)
        finally:
            await stream.close()
            await task

        assert ingester.stats["skipped_count"] == 3
        assert ingester.stats["error_count"] == 0
        assert await store.get_record(TASK, ALICE, "bad") is None
        assert await store.get_record(TASK, ALICE, "good") is not None

    @pytest.mark.asyncio
    async def test_cursor_saved_on_stop_and_resumed(self, store, notifier, data_dir):
        """A restarted ingester continues after the last processed event."""
        await store.initialize()
        stream = InMemoryChangeStream(poll_timeout=0.01)
        await stream.connect()
        uri = board_uri()
        stream.publish(ALICE, TASK, "t1", task_record(uri))
        last = stream.publish(ALICE, TASK, "t2", task_record(uri))

        first = Ingester(stream, store, notifier, clock_us=lambda: last.time_us)
        task = asyncio.create_task(first.start())
        await _wait_for(lambda: first.stats["processed_count"] == 2)
        await first.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert await store.load_cursor() == last.time_us

        stream.publish(ALICE, TASK, "t3", task_record(uri))
        second = Ingester(stream, store, notifier, clock_us=lambda: last.time_us)
        task = asyncio.create_task(second.start())
        try:
            await _wait_for(lambda: second.stats["processed_count"] == 1)
            await asyncio.sleep(0.05)
        finally:
            await stream.close()
            await task

        assert second.stats["processed_count"] == 1
        assert await store.get_record(TASK, ALICE, "t3") is not None

    @pytest.mark.asyncio
    async def test_periodic_cursor_save(self, store, stream, notifier):
        """The cursor is saved while the loop runs."""
        await store.initialize()
        await stream.connect()
        ingester = Ingester(stream, store, notifier, cursor_save_interval=0.02)
        event = stream.publish(ALICE, TASK, "t1", task_record(board_uri()))

        task = asyncio.create_task(ingester.start())
        try:
            await _wait_for(lambda: ingester.stats["processed_count"] == 1)
            await asyncio.sleep(0.1)
            assert await store.load_cursor() == event.time_us
        finally:
            await stream.close()
            await task

    @pytest.mark.asyncio
    async def test_stale_persisted_cursor_triggers_sweep(self, store, stream, notifier):
        """A cursor older than the retention window reconciles every board."""
        await store.initialize()
        await stream.connect()
        await store.upsert_record(BOARD, ALICE, "board1", board_record())
        await store.save_cursor(1_000)
        backfiller = FakeBackfiller(store)
        sub = notifier.subscribe(board_uri())
        ingester = Ingester(
            stream,
            store,
            notifier,
            backfiller,
            cursor_max_age_us=48 * HOUR_US,
            clock_us=lambda: 1_000 + 49 * HOUR_US,
        )

        assert ingester.is_stale(1_000)
        task = asyncio.create_task(ingester.start())
        try:
            await _wait_for(lambda: backfiller.sweeps == 1)
            result = await ingester.reconciliation_task
        finally:
            await stream.close()
            await task

        assert result.boards == 1
        assert sub.state is SubscriptionState.NOTIFIED

    @pytest.mark.asyncio
    async def test_fresh_cursor_no_sweep(self, store, stream, notifier):
        """A recent cursor resumes without reconciliation."""
        await store.initialize()
        await stream.connect()
        await store.save_cursor(1_000)
        backfiller = FakeBackfiller(store)
        ingester = Ingester(
            stream, store, notifier, backfiller, clock_us=lambda: 1_000 + HOUR_US
        )

        assert not ingester.is_stale(1_000)
        assert not ingester.is_stale(None)
        task = asyncio.create_task(ingester.start())
        await asyncio.sleep(0.05)
        await stream.close()
        await task

        assert backfiller.sweeps == 0
        assert ingester.reconciliation_task is None

    @pytest.mark.asyncio
    async def test_evicted_cursor_triggers_sweep(self, store, stream, notifier):
        """A cursor the stream no longer retains reconciles and goes live."""
        await store.initialize()
        await stream.connect()
        await store.upsert_record(BOARD, ALICE, "board1", board_record())
        stream.publish(ALICE, TASK, "t0", task_record(board_uri()), time_us=1_000)
        stream.evict_before(5_000)
        await store.save_cursor(2_000)
        backfiller = FakeBackfiller(store)
        ingester = Ingester(stream, store, notifier, backfiller, clock_us=lambda: 2_000)

        task = asyncio.create_task(ingester.start())
        try:
            await _wait_for(lambda: backfiller.sweeps == 1)
            stream.publish(ALICE, TASK, "t1", task_record(board_uri()))
            await _wait_for(lambda: ingester.stats["processed_count"] == 1)
        finally:
            await stream.close()
            await task

        assert await store.get_record(TASK, ALICE, "t1") is not None

    @pytest.mark.asyncio
    async def test_busy_store_retried(self, data_dir, stream, notifier):
        """A store that is briefly locked does not lose the event."""
        store = FlakyStore(str(Path(data_dir) / "appview.db"), failures=1, wal_mode=False)
        await store.initialize()
        await stream.connect()
        uri = board_uri()
        stream.publish(ALICE, BOARD, "board1", board_record())
        last = stream.publish(ALICE, TASK, "t1", task_record(uri))

        ingester = Ingester(stream, store, notifier, retry_backoff=0.01)
        task = asyncio.create_task(ingester.start())
        try:
            await _wait_for(lambda: ingester.stats["processed_count"] == 2)
        finally:
            await stream.close()
            await task

        assert store.calls == 3
        assert await store.get_record(BOARD, ALICE, "board1") is not None
        assert ingester.stats["error_count"] == 0
        assert ingester.cursor == last.time_us

    @pytest.mark.asyncio
    async def test_failing_event_holds_cursor(self, data_dir, stream, notifier):
        """An event that keeps failing stops the loop with the cursor before it."""
        store = FlakyStore(str(Path(data_dir) / "appview.db"), failures=100, wal_mode=False)
        store.fail_rkey = "t2"
        await store.initialize()
        await stream.connect()
        uri = board_uri()
        first = stream.publish(ALICE, TASK, "t1", task_record(uri))
        stream.publish(ALICE, TASK, "t2", task_record(uri))
        stream.publish(ALICE, TASK, "t3", task_record(uri))

        ingester = Ingester(stream, store, notifier, apply_attempts=3, retry_backoff=0.01)
        try:
            with pytest.raises(IngestError):
                await asyncio.wait_for(ingester.start(), timeout=2.0)
        finally:
            await stream.close()

        assert ingester.stats["error_count"] == 1
        assert ingester.cursor == first.time_us
        assert await store.load_cursor() == first.time_us
        assert await store.get_record(TASK, ALICE, "t3") is None
