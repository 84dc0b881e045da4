"""
Unit tests for the change stream backends.

Tests cover:
- Jetstream message parsing
- In-memory publish/subscribe
- Resuming from a cursor
- Stale cursors
"""

import asyncio

import pytest

from appview.skyboard_appview.firehose import (
    ChangeEvent,
    ChangeStreamConnectionError,
    CommitOperation,
    CursorTooStaleError,
    InMemoryChangeStream,
)
from sdk.skyboard_sdk.uris import TASK
from tests.factories import ALICE, board_uri, task_record


async def _take(stream, cursor, count, timeout=1.0):
    events = []

    async def collect():
        async for event in stream.subscribe(cursor):
            events.append(event)
            if len(events) == count:
                return

    await asyncio.wait_for(collect(), timeout=timeout)
    return events


class TestChangeEvent:
    """Tests for ChangeEvent parsing."""

    def test_from_commit_message(self):
        """Commit messages become events."""
        message = {
            "did": ALICE,
            "time_us": 1725911162329308,
            "kind": "commit",
            "commit": {
                "rev": "3l3qo2vutsw2b",
                "operation": "create",
                "collection": TASK,
                "rkey": "3l3qo2vuowo2b",
                "record": task_record(board_uri()),
            },
        }
        event = ChangeEvent.from_message(message)

        assert event.did == ALICE
        assert event.time_us == 1725911162329308
        assert event.operation is CommitOperation.CREATE
        assert event.record["title"] == "Fix bug"
        assert event.to_message() == message

    def test_delete_has_no_record(self):
        """Delete events carry no record."""
        message = {
            "did": ALICE,
            "time_us": 1,
            "kind": "commit",
            "commit": {"operation": "delete", "collection": TASK, "rkey": "x"},
        }
        event = ChangeEvent.from_message(message)
        assert event.operation is CommitOperation.DELETE
        assert event.record is None

    @pytest.mark.parametrize(
        "message",
        [
            {"did": ALICE, "time_us": 1, "kind": "identity", "identity": {}},
            {"did": ALICE, "time_us": 1, "kind": "commit", "commit": {"operation": "create"}},
            {"did": ALICE, "kind": "commit", "commit": {"operation": "create", "collection": TASK, "rkey": "x"}},
            {"did": ALICE, "time_us": 1, "kind": "commit", "commit": {"operation": "bogus"}},
        ],
    )
    def test_non_commit_and_malformed(self, message):
        """Anything but a well-formed commit is skipped."""
        assert ChangeEvent.from_message(message) is None


class TestInMemoryChangeStream:
    """Tests for InMemoryChangeStream."""

    @pytest.fixture
    def stream(self):
        return InMemoryChangeStream(poll_timeout=0.01)

    @pytest.mark.asyncio
    async def test_connect_close(self, stream):
        """Connection lifecycle."""
        assert not stream.is_connected
        await stream.connect()
        assert stream.is_connected
        await stream.close()
        assert not stream.is_connected

    @pytest.mark.asyncio
    async def test_subscribe_requires_connection(self, stream):
        """Subscribing before connect fails."""
        with pytest.raises(ChangeStreamConnectionError):
            await _take(stream, None, 1)

    @pytest.mark.asyncio
    async def test_publish_subscribe(self, stream):
        """Published events are yielded in order."""
        await stream.connect()
        stream.publish(ALICE, TASK, "t1", task_record(board_uri()))
        stream.publish(ALICE, TASK, "t2", task_record(board_uri()))
        stream.publish(ALICE, TASK, "t1")

        events = await _take(stream, None, 3)

        assert [e.rkey for e in events] == ["t1", "t2", "t1"]
        assert events[2].operation is CommitOperation.DELETE
        assert events[0].time_us < events[1].time_us < events[2].time_us

    @pytest.mark.asyncio
    async def test_resume_from_cursor(self, stream):
        """Events at or before the cursor are not replayed."""
        await stream.connect()
        first = stream.publish(ALICE, TASK, "t1", task_record(board_uri()))
        stream.publish(ALICE, TASK, "t2", task_record(board_uri()))

        events = await _take(stream, first.time_us, 1)
        assert [e.rkey for e in events] == ["t2"]

    @pytest.mark.asyncio
    async def test_live_events_after_subscribe(self, stream):
        """Subscribers receive events published while waiting."""
        await stream.connect()
        consumer = asyncio.create_task(_take(stream, None, 1))
        await asyncio.sleep(0.02)

        stream.publish(ALICE, TASK, "late", task_record(board_uri()))

        events = await consumer
        assert events[0].rkey == "late"

    @pytest.mark.asyncio
    async def test_live_tail_without_replay(self):
        """Without replay a None cursor skips retained events."""
        stream = InMemoryChangeStream(poll_timeout=0.01, replay_retained=False)
        await stream.connect()
        stream.publish(ALICE, TASK, "old", task_record(board_uri()))
        consumer = asyncio.create_task(_take(stream, None, 1))
        await asyncio.sleep(0.02)

        stream.publish(ALICE, TASK, "new", task_record(board_uri()))

        assert [e.rkey for e in await consumer] == ["new"]

    @pytest.mark.asyncio
    async def test_stale_cursor(self, stream):
        """A cursor older than the retained window is rejected."""
        await stream.connect()
        old = stream.publish(ALICE, TASK, "t1", task_record(board_uri()), time_us=1_000)
        stream.publish(ALICE, TASK, "t2", task_record(board_uri()), time_us=5_000)
        assert stream.evict_before(2_000) == 1

        with pytest.raises(CursorTooStaleError) as exc_info:
            await _take(stream, old.time_us, 1)
        assert exc_info.value.oldest_available == 2_000

        events = await _take(stream, 2_000, 1)
        assert events[0].rkey == "t2"

    @pytest.mark.asyncio
    async def test_publish_message(self, stream):
        """Raw messages are parsed; non-commits are counted as skipped."""
        await stream.connect()
        assert stream.publish_message({"did": ALICE, "time_us": 10, "kind": "account"}) is None
        event = stream.publish_message(
            {
                "did": ALICE,
                "time_us": 10,
                "kind": "commit",
                "commit": {"operation": "delete", "collection": TASK, "rkey": "t1"},
            }
        )

        assert event.time_us == 10
        assert stream.stats.skipped == 1
        assert stream.get_all_events() == [event]
