"""
Local-first record cache.

Locally authored records are staged here with sync_status 'pending' and
shown immediately; the SyncWorker later writes them to the principal's
repository and marks them 'synced'. Records fetched from repositories
are stored as 'synced' unless a local unsynced copy of the same record
exists, in which case the local copy wins.

Record-level precedence (which copy of a record to keep) is decided
here. Field-level precedence (which value is effective) is decided by
the shared materialization engine; this module never folds ops itself.

Invariants:
    - A pending or errored local record is never overwritten by a remote
      copy
    - Deleting a record that already reached the repository, or whose
      push is in flight, stages a pending delete instead of forgetting it
    - A write is marked synced or errored only if the row still holds the
      body that was pushed; a newer local write stays pending
    - One LocalCache instance per database file; in-flight pushes are
      tracked in memory
    - materialize_board() treats the cache principal's own records as
      applied
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

from .materialize import BoardView, MaterializedTask
from .store import RECORD_TABLES, RecordStore
from .validate import parse_record

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


_UNSYNCED = (SyncStatus.PENDING.value, SyncStatus.ERROR.value)


@dataclass(frozen=True)
class UnsyncedWrite:
    """A staged write waiting for the repository."""

    collection: str
    did: str
    rkey: str
    value: dict[str, Any] | None
    status: SyncStatus
    created_at: str
    record_json: str | None = None

    @property
    def is_delete(self) -> bool:
        return self.value is None


class LocalCache(RecordStore):
    """SQLite cache of one principal's view of their boards.

    Example:
        >>> cache = LocalCache("did:plc:alice", "./data/local.db")
        >>> await cache.initialize()
        >>> await cache.put_local(TASK, generate_tid(), task_record)
    """

    EXTRA_COLUMNS = (
        ("sync_status", "TEXT NOT NULL DEFAULT 'synced'"),
        ("sync_error", "TEXT"),
    )

    def __init__(self, principal: str, db_path: str, **kwargs: Any) -> None:
        super().__init__(db_path, **kwargs)
        self.principal = principal
        self._in_flight: set[tuple[str, str, str]] = set()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        super()._create_schema(conn)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_deletes (
            collection TEXT NOT NULL,
            did TEXT NOT NULL,
            rkey TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            sync_error TEXT,
            created_at TEXT NOT NULL,
            PRIMARY KEY (collection, did, rkey)
            )
        """)

    @contextmanager
    def pushing(self, write: UnsyncedWrite) -> Iterator[None]:
        """Mark a write as in flight to the repository for the duration."""
        key = (write.collection, write.did, write.rkey)
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)

    async def put_local(self, collection: str, rkey: str, value: dict[str, Any]) -> str:
        """Stage a record authored by the cache principal.

        Returns:
            URI of the board the record belongs to

        Raises:
            ValidationError: If the record is invalid
        """
        validated = parse_record(collection, value)

        def statements(conn: sqlite3.Connection) -> str:
            conn.execute(
                "DELETE FROM pending_deletes WHERE collection = ? AND did = ? AND rkey = ?",
                (collection, self.principal, rkey),
            )
            return self._upsert_row(
                conn,
                collection,
                self.principal,
                rkey,
                validated,
                extra={"sync_status": SyncStatus.PENDING.value, "sync_error": None},
            )

        board_uri = await self._retry_busy(lambda: self._write(statements))
        logger.debug(f"Staged local {collection}/{rkey}", extra={"board_uri": board_uri})
        return board_uri

    async def apply_remote(self, collection: str, did: str, rkey: str, value: dict[str, Any]) -> bool:
        """Store a record fetched from a repository.

        Returns:
            False when a local unsynced copy took precedence
        """
        table = self._table(collection)

        def statements(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                f"SELECT sync_status FROM {table} WHERE did = ? AND rkey = ?", (did, rkey)
            ).fetchone()
            if row is not None and row["sync_status"] in _UNSYNCED:
                return False
            pending_delete = conn.execute(
                "SELECT 1 FROM pending_deletes WHERE collection = ? AND did = ? AND rkey = ?",
                (collection, did, rkey),
            ).fetchone()
            if pending_delete is not None:
                return False
            self._upsert_row(
                conn,
                collection,
                did,
                rkey,
                value,
                extra={"sync_status": SyncStatus.SYNCED.value, "sync_error": None},
            )
            return True

        return await self._retry_busy(lambda: self._write(statements))

    async def delete_local(self, collection: str, rkey: str) -> str | None:
        """Delete one of the principal's records.

        A record that never reached the repository and is not being pushed
        is simply dropped; otherwise a pending delete is staged for the
        SyncWorker.

        Returns:
            URI of the owning board, or None
        """
        table = self._table(collection)

        def statements(conn: sqlite3.Connection) -> str | None:
            row = conn.execute(
                f"SELECT sync_status, created_at FROM {table} WHERE did = ? AND rkey = ?",
                (self.principal, rkey),
            ).fetchone()
            board_uri = self._delete_row(conn, collection, self.principal, rkey)
            if row is not None and (
                row["sync_status"] != SyncStatus.PENDING.value
                or (collection, self.principal, rkey) in self._in_flight
            ):
                conn.execute(
                    "INSERT OR REPLACE INTO pending_deletes "
                    "(collection, did, rkey, status, created_at) VALUES (?, ?, ?, 'pending', ?)",
                    (collection, self.principal, rkey, row["created_at"]),
                )
            return board_uri

        return await self._retry_busy(lambda: self._write(statements))

    async def list_unsynced(self) -> list[UnsyncedWrite]:
        """The principal's staged writes, oldest first."""
        writes: list[UnsyncedWrite] = []
        with self._get_connection() as conn:
            for collection, table in RECORD_TABLES.items():
                rows = conn.execute(
                    f"SELECT rkey, record_json, sync_status, created_at FROM {table} "
                    f"WHERE did = ? AND sync_status IN (?, ?)",
                    (self.principal, *_UNSYNCED),
                ).fetchall()
                writes.extend(
                    UnsyncedWrite(
                        collection=collection,
                        did=self.principal,
                        rkey=row["rkey"],
                        value=json.loads(row["record_json"]),
                        status=SyncStatus(row["sync_status"]),
                        created_at=row["created_at"],
                        record_json=row["record_json"],
                    )
                    for row in rows
                )
            rows = conn.execute(
                "SELECT collection, rkey, status, created_at FROM pending_deletes WHERE did = ?",
                (self.principal,),
            ).fetchall()
            writes.extend(
                UnsyncedWrite(
                    collection=row["collection"],
                    did=self.principal,
                    rkey=row["rkey"],
                    value=None,
                    status=SyncStatus(row["status"]),
                    created_at=row["created_at"],
                )
                for row in rows
            )
        writes.sort(key=lambda w: (w.created_at, w.collection, w.rkey))
        return writes

    async def is_current(self, write: UnsyncedWrite) -> bool:
        """Whether a listed write is still the latest staged state of its record."""
        with self._get_connection() as conn:
            if write.is_delete:
                row = conn.execute(
                    "SELECT 1 FROM pending_deletes WHERE collection = ? AND did = ? AND rkey = ?",
                    (write.collection, write.did, write.rkey),
                ).fetchone()
                return row is not None
            row = conn.execute(
                f"SELECT record_json, sync_status FROM {self._table(write.collection)} "
                f"WHERE did = ? AND rkey = ?",
                (write.did, write.rkey),
            ).fetchone()
        return (
            row is not None
            and row["sync_status"] in _UNSYNCED
            and row["record_json"] == self._pushed_body(write)
        )

    @staticmethod
    def _pushed_body(write: UnsyncedWrite) -> str:
        if write.record_json is not None:
            return write.record_json
        return json.dumps(write.value, sort_keys=True)

    async def mark_synced(self, write: UnsyncedWrite) -> None:
        """Mark a pushed write synced, unless the row changed since it was listed."""

        def statements(conn: sqlite3.Connection) -> None:
            if write.is_delete:
                conn.execute(
                    "DELETE FROM pending_deletes WHERE collection = ? AND did = ? AND rkey = ?",
                    (write.collection, write.did, write.rkey),
                )
            else:
                conn.execute(
                    f"UPDATE {self._table(write.collection)} "
                    f"SET sync_status = ?, sync_error = NULL "
                    f"WHERE did = ? AND rkey = ? AND record_json = ?",
                    (SyncStatus.SYNCED.value, write.did, write.rkey, self._pushed_body(write)),
                )

        await self._retry_busy(lambda: self._write(statements))

    async def mark_error(self, write: UnsyncedWrite, error: str) -> None:
        def statements(conn: sqlite3.Connection) -> None:
            if write.is_delete:
                conn.execute(
                    "UPDATE pending_deletes SET status = ?, sync_error = ? "
                    "WHERE collection = ? AND did = ? AND rkey = ?",
                    (SyncStatus.ERROR.value, error, write.collection, write.did, write.rkey),
                )
            else:
                conn.execute(
                    f"UPDATE {self._table(write.collection)} "
                    f"SET sync_status = ?, sync_error = ? "
                    f"WHERE did = ? AND rkey = ? AND record_json = ?",
                    (SyncStatus.ERROR.value, error, write.did, write.rkey, self._pushed_body(write)),
                )

        await self._retry_busy(lambda: self._write(statements))

    async def reset_errors(self) -> int:
        """Move errored writes back to pending so they are retried.

        Returns:
            Number of writes reset
        """

        def statements(conn: sqlite3.Connection) -> int:
            count = 0
            for table in RECORD_TABLES.values():
                cursor = conn.execute(
                    f"UPDATE {table} SET sync_status = ? WHERE did = ? AND sync_status = ?",
                    (SyncStatus.PENDING.value, self.principal, SyncStatus.ERROR.value),
                )
                count += cursor.rowcount
            cursor = conn.execute(
                "UPDATE pending_deletes SET status = ? WHERE did = ? AND status = ?",
                (SyncStatus.PENDING.value, self.principal, SyncStatus.ERROR.value),
            )
            return count + cursor.rowcount

        return await self._retry_busy(lambda: self._write(statements))

    async def sync_status(self, collection: str, rkey: str) -> SyncStatus | None:
        table = self._table(collection)
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT sync_status FROM {table} WHERE did = ? AND rkey = ?",
                (self.principal, rkey),
            ).fetchone()
        return SyncStatus(row["sync_status"]) if row else None

    async def materialize_board(
        self, board_uri: str, viewer: str | None = None
    ) -> list[MaterializedTask] | None:
        """Optimistic view: the principal's own records count as applied."""
        return await super().materialize_board(board_uri, viewer=viewer or self.principal)

    async def board_view(self, board_uri: str, viewer: str | None = None) -> BoardView | None:
        return await super().board_view(board_uri, viewer=viewer or self.principal)
