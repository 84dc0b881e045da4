"""
Unit tests for the local-first cache.

Tests cover:
- Staging local writes as pending
- Local copies winning over remote copies
- Pending deletes
- Pushes in flight and records rewritten after listing
- Sync status transitions
- Optimistic materialization for the cache principal
"""

import tempfile
from pathlib import Path

import pytest

from sdk.skyboard_sdk.errors import ValidationError
from sdk.skyboard_sdk.local_cache import LocalCache, SyncStatus
from sdk.skyboard_sdk.uris import BOARD, OP, TASK
from tests.factories import (
    ALICE,
    BOB,
    board_record,
    board_uri,
    op_record,
    task_record,
    task_uri,
    ts,
)


class TestLocalCache:
    """Tests for LocalCache, principal Bob on Alice's board."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def cache(self, data_dir):
        """Create a cache for Bob."""
        return LocalCache(BOB, str(Path(data_dir) / "local.db"), wal_mode=False)

    @pytest.mark.asyncio
    async def test_put_local_is_pending(self, cache):
        """Local writes start pending."""
        await cache.initialize()
        uri = board_uri()
        assert await cache.put_local(TASK, "t1", task_record(uri)) == uri

        assert await cache.sync_status(TASK, "t1") is SyncStatus.PENDING
        unsynced = await cache.list_unsynced()
        assert [(w.collection, w.rkey, w.is_delete) for w in unsynced] == [(TASK, "t1", False)]

    @pytest.mark.asyncio
    async def test_put_local_validates(self, cache):
        """Invalid local records are refused before staging."""
        await cache.initialize()
        with pytest.raises(ValidationError):
            await cache.put_local(TASK, "t1", {"title": "no board"})
        assert await cache.list_unsynced() == []

    @pytest.mark.asyncio
    async def test_remote_does_not_override_pending(self, cache):
        """A pending local copy beats a remote copy of the same record."""
        await cache.initialize()
        uri = board_uri()
        await cache.put_local(TASK, "t1", task_record(uri, title="Local"))

        applied = await cache.apply_remote(TASK, BOB, "t1", task_record(uri, title="Remote"))

        assert applied is False
        assert (await cache.get_record(TASK, BOB, "t1"))["title"] == "Local"

    @pytest.mark.asyncio
    async def test_remote_does_not_override_error(self, cache):
        """An errored local copy also beats the remote copy."""
        await cache.initialize()
        uri = board_uri()
        await cache.put_local(TASK, "t1", task_record(uri, title="Local"))
        (write,) = await cache.list_unsynced()
        await cache.mark_error(write, "rejected")

        assert await cache.apply_remote(TASK, BOB, "t1", task_record(uri, title="Remote")) is False
        assert await cache.sync_status(TASK, "t1") is SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_remote_overrides_synced(self, cache):
        """Once synced, remote copies are accepted."""
        await cache.initialize()
        uri = board_uri()
        await cache.put_local(TASK, "t1", task_record(uri, title="Local"))
        (write,) = await cache.list_unsynced()
        await cache.mark_synced(write)

        assert await cache.apply_remote(TASK, BOB, "t1", task_record(uri, title="Remote")) is True
        assert (await cache.get_record(TASK, BOB, "t1"))["title"] == "Remote"
        assert await cache.list_unsynced() == []

    @pytest.mark.asyncio
    async def test_remote_records_of_others(self, cache):
        """Other principals' records are stored as synced."""
        await cache.initialize()
        assert await cache.apply_remote(BOARD, ALICE, "board1", board_record()) is True
        assert await cache.get_board(board_uri()) is not None
        assert await cache.list_unsynced() == []

    @pytest.mark.asyncio
    async def test_delete_unsynced_record_forgets_it(self, cache):
        """Deleting a never-synced record leaves nothing to push."""
        await cache.initialize()
        await cache.put_local(TASK, "t1", task_record(board_uri()))

        assert await cache.delete_local(TASK, "t1") == board_uri()
        assert await cache.list_unsynced() == []

    @pytest.mark.asyncio
    async def test_delete_synced_record_stages_delete(self, cache):
        """Deleting a synced record stages a pending delete."""
        await cache.initialize()
        uri = board_uri()
        await cache.put_local(TASK, "t1", task_record(uri))
        (write,) = await cache.list_unsynced()
        await cache.mark_synced(write)

        await cache.delete_local(TASK, "t1")
        (pending,) = await cache.list_unsynced()
        assert pending.is_delete
        assert pending.rkey == "t1"

        # a stale remote copy does not resurrect the record
        assert await cache.apply_remote(TASK, BOB, "t1", task_record(uri)) is False
        assert await cache.get_record(TASK, BOB, "t1") is None

        await cache.mark_synced(pending)
        assert await cache.list_unsynced() == []

    @pytest.mark.asyncio
    async def test_delete_while_pushing_stages_delete(self, cache):
        """Deleting a pending record whose push is in flight stages a delete."""
        await cache.initialize()
        await cache.put_local(TASK, "t1", task_record(board_uri()))
        (write,) = await cache.list_unsynced()

        with cache.pushing(write):
            await cache.delete_local(TASK, "t1")
        await cache.mark_synced(write)

        (pending,) = await cache.list_unsynced()
        assert pending.is_delete
        assert await cache.is_current(pending)
        assert not await cache.is_current(write)

    @pytest.mark.asyncio
    async def test_mark_skips_rewritten_record(self, cache):
        """Marking an older body leaves a newer staged body pending."""
        await cache.initialize()
        uri = board_uri()
        await cache.put_local(TASK, "t1", task_record(uri, title="First"))
        (first,) = await cache.list_unsynced()
        await cache.put_local(TASK, "t1", task_record(uri, title="Second"))

        assert not await cache.is_current(first)
        await cache.mark_synced(first)
        assert await cache.sync_status(TASK, "t1") is SyncStatus.PENDING
        await cache.mark_error(first, "rejected")
        assert await cache.sync_status(TASK, "t1") is SyncStatus.PENDING

        (second,) = await cache.list_unsynced()
        assert second.value["title"] == "Second"
        await cache.mark_synced(second)
        assert await cache.sync_status(TASK, "t1") is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_reset_errors(self, cache):
        """Errored writes go back to pending."""
        await cache.initialize()
        await cache.put_local(TASK, "t1", task_record(board_uri()))
        (write,) = await cache.list_unsynced()
        await cache.mark_error(write, "rejected")

        assert await cache.reset_errors() == 1
        assert await cache.sync_status(TASK, "t1") is SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_unsynced_oldest_first(self, cache):
        """Staged writes are listed in creation order."""
        await cache.initialize()
        uri = board_uri()
        await cache.put_local(TASK, "t2", task_record(uri, created_at=ts(2)))
        await cache.put_local(TASK, "t1", task_record(uri, created_at=ts(1)))
        await cache.put_local(
            OP, "o1", op_record(uri, task_uri(BOB, "t1"), {"title": "x"}, ts(3))
        )

        assert [w.rkey for w in await cache.list_unsynced()] == ["t1", "t2", "o1"]

    @pytest.mark.asyncio
    async def test_own_ops_applied_optimistically(self, cache):
        """Bob's untrusted op is applied in his own view."""
        await cache.initialize()
        uri = board_uri()
        target = task_uri(ALICE, "t1")
        await cache.apply_remote(BOARD, ALICE, "board1", board_record())
        await cache.apply_remote(TASK, ALICE, "t1", task_record(uri, title="Fix bug"))
        await cache.put_local(OP, "o1", op_record(uri, target, {"title": "Bob's title"}, ts(5)))

        tasks = await cache.materialize_board(uri)
        assert tasks[0].effective_title == "Bob's title"

        view = await cache.board_view(uri, viewer="did:plc:nobody")
        assert view.tasks[0].effective_title == "Fix bug"
        assert [op.did for op in view.tasks[0].pending_ops] == [BOB]
