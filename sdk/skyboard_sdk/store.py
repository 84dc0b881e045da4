"""
SQLite record store shared by the aggregator and the local-first cache.

Each collection has its own table keyed by record URI with a unique
(did, rkey) pair and an index on board_uri. The validated wire dict is
stored as JSON; typed records are rebuilt on read and handed to the
materialization engine, so both read models fold identical inputs.

Invariants:
    - One transaction per record write; no cross-record transactions
    - Re-ingesting a record overwrites it in place
    - Deletes return the owning board URI (None for board records)
    - A locked database is retried a bounded number of times, then
      StoreBusyError is raised

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS,
      nullable columns)
    - Subclasses add columns through EXTRA_COLUMNS, never by editing
      RECORD_TABLES
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import StoreBusyError
from .materialize import BoardView, MaterializedTask, build_board_view, materialize_board
from .records import Board, BoardRecords, record_from_wire
from .uris import APPROVAL, BOARD, COMMENT, OP, REACTION, TASK, TRUST, build_uri

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECORD_TABLES: dict[str, str] = {
    BOARD: "boards",
    TASK: "tasks",
    OP: "ops",
    TRUST: "trusts",
    COMMENT: "comments",
    APPROVAL: "approvals",
    REACTION: "reactions",
}


class RecordStore:
    """Per-collection SQLite tables of validated records.

    Thread safety:
        Each operation opens its own connection. SQLite handles
        concurrent access via WAL mode and busy_timeout.
    """

    # (name, SQL type and default) pairs appended to every record table
    EXTRA_COLUMNS: tuple[tuple[str, str], ...] = ()

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        max_retries: int = 3,
        retry_delay_ms: int = 100,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout per statement
            max_retries: Attempts for a write that finds the database locked
            retry_delay_ms: Delay between those attempts
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.max_retries = max(1, max_retries)
        self.retry_delay_ms = retry_delay_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    async def _retry_busy(self, operation: Callable[[], T]) -> T:
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                if "locked" not in message and "busy" not in message:
                    raise
                if attempt == self.max_retries:
                    raise StoreBusyError(
                        f"Database {self.db_path} still locked after {attempt} attempts",
                        attempts=attempt,
                    ) from e
                logger.warning(
                    f"Database locked, retrying ({attempt}/{self.max_retries})",
                    extra={"db_path": str(self.db_path)},
                )
                await asyncio.sleep(self.retry_delay_ms / 1000.0)
        raise AssertionError("unreachable")

    def _write(self, statements: Callable[[sqlite3.Connection], T]) -> T:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = statements(conn)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return result

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        extra = "".join(f",\n                {name} {decl}" for name, decl in self.EXTRA_COLUMNS)
        for table in RECORD_TABLES.values():
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                uri TEXT PRIMARY KEY,
                did TEXT NOT NULL,
                rkey TEXT NOT NULL,
                board_uri TEXT NOT NULL,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                indexed_at INTEGER NOT NULL{extra},
                UNIQUE (did, rkey)
                )
            """)
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_board ON {table} (board_uri)"
            )

    async def initialize(self) -> None:
        """Create tables if they do not exist."""
        await self._retry_busy(lambda: self._write(self._create_schema))
        logger.info(f"Initialized record store at {self.db_path}")

    @staticmethod
    def _table(collection: str) -> str:
        table = RECORD_TABLES.get(collection)
        if table is None:
            raise ValueError(f"Unknown collection: {collection}")
        return table

    @staticmethod
    def _board_uri_of(collection: str, did: str, rkey: str, value: dict[str, Any]) -> str:
        if collection == BOARD:
            return build_uri(did, BOARD, rkey)
        return value["boardUri"]

    def _upsert_row(
        self,
        conn: sqlite3.Connection,
        collection: str,
        did: str,
        rkey: str,
        value: dict[str, Any],
        extra: dict[str, Any] | None = None,
    ) -> str:
        table = self._table(collection)
        board_uri = self._board_uri_of(collection, did, rkey, value)
        columns = {
            "uri": build_uri(did, collection, rkey),
            "did": did,
            "rkey": rkey,
            "board_uri": board_uri,
            "record_json": json.dumps(value, sort_keys=True),
            "created_at": value.get("createdAt", ""),
            "indexed_at": int(time.time() * 1000),
            **(extra or {}),
        }
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{name} = excluded.{name}" for name in columns if name != "uri")
        conn.execute(
            f"INSERT INTO {table} ({names}) VALUES ({placeholders}) "
            f"ON CONFLICT(uri) DO UPDATE SET {updates}",
            tuple(columns.values()),
        )
        return board_uri

    def _delete_row(self, conn: sqlite3.Connection, collection: str, did: str, rkey: str) -> str | None:
        table = self._table(collection)
        row = conn.execute(
            f"SELECT board_uri FROM {table} WHERE did = ? AND rkey = ?", (did, rkey)
        ).fetchone()
        conn.execute(f"DELETE FROM {table} WHERE did = ? AND rkey = ?", (did, rkey))
        if collection == BOARD or row is None:
            return None
        return row["board_uri"]

    async def upsert_record(
        self,
        collection: str,
        did: str,
        rkey: str,
        value: dict[str, Any],
    ) -> str:
        """Insert or overwrite a validated record.

        Returns:
            URI of the board the record belongs to
        """
        return await self._retry_busy(
            lambda: self._write(lambda conn: self._upsert_row(conn, collection, did, rkey, value))
        )

    async def delete_record(self, collection: str, did: str, rkey: str) -> str | None:
        """Delete a record by key.

        Returns:
            URI of the owning board, or None for boards and unknown records
        """
        return await self._retry_busy(
            lambda: self._write(lambda conn: self._delete_row(conn, collection, did, rkey))
        )

    async def prune_board_records(
        self,
        collection: str,
        did: str,
        board_uri: str,
        keep_rkeys: Iterable[str],
        indexed_before_ms: int,
    ) -> int:
        """Delete did's records of collection on board_uri that are not in keep_rkeys.

        Rows indexed after indexed_before_ms are kept; they arrived after
        the listing that produced keep_rkeys started.

        Returns:
            Number of records deleted
        """
        table = self._table(collection)
        keep = set(keep_rkeys)

        def statements(conn: sqlite3.Connection) -> int:
            rows = conn.execute(
                f"SELECT rkey FROM {table} WHERE did = ? AND board_uri = ? AND indexed_at <= ?",
                (did, board_uri, indexed_before_ms),
            ).fetchall()
            stale = [row["rkey"] for row in rows if row["rkey"] not in keep]
            for rkey in stale:
                conn.execute(f"DELETE FROM {table} WHERE did = ? AND rkey = ?", (did, rkey))
            return len(stale)

        return await self._retry_busy(lambda: self._write(statements))

    async def get_record(self, collection: str, did: str, rkey: str) -> dict[str, Any] | None:
        """Stored wire dict for a record, or None."""
        table = self._table(collection)
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT record_json FROM {table} WHERE did = ? AND rkey = ?", (did, rkey)
            ).fetchone()
        return json.loads(row["record_json"]) if row else None

    async def get_board(self, board_uri: str) -> Board | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT did, rkey, record_json FROM boards WHERE uri = ?", (board_uri,)
            ).fetchone()
        if row is None:
            return None
        return Board.from_record(row["did"], row["rkey"], json.loads(row["record_json"]))

    async def list_by_board(self, collection: str, board_uri: str) -> list[Any]:
        """All typed records of collection scoped to board_uri, by creation time."""
        table = self._table(collection)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT did, rkey, record_json FROM {table} "
                f"WHERE board_uri = ? ORDER BY created_at, uri",
                (board_uri,),
            ).fetchall()
        return [
            record_from_wire(collection, row["did"], row["rkey"], json.loads(row["record_json"]))
            for row in rows
        ]

    async def list_board_uris(self) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT uri FROM boards ORDER BY uri").fetchall()
        return [row["uri"] for row in rows]

    async def load_board(self, board_uri: str) -> BoardRecords | None:
        """Board and every record scoped to it, as stored.

        Ops, comments and reactions whose task is gone are kept; only
        materialization ignores them.
        """
        board = await self.get_board(board_uri)
        if board is None:
            return None
        return BoardRecords(
            board=board,
            tasks=await self.list_by_board(TASK, board_uri),
            ops=await self.list_by_board(OP, board_uri),
            trusts=await self.list_by_board(TRUST, board_uri),
            comments=await self.list_by_board(COMMENT, board_uri),
            approvals=await self.list_by_board(APPROVAL, board_uri),
            reactions=await self.list_by_board(REACTION, board_uri),
        )

    async def materialize_board(
        self, board_uri: str, viewer: str | None = None
    ) -> list[MaterializedTask] | None:
        """Materialized tasks for board_uri, or None if the board is unknown."""
        records = await self.load_board(board_uri)
        if records is None:
            return None
        return materialize_board(
            records.board, records.tasks, records.ops, records.trusts, viewer=viewer
        )

    async def board_view(self, board_uri: str, viewer: str | None = None) -> BoardView | None:
        """Raw records and materialized tasks for board_uri, or None."""
        records = await self.load_board(board_uri)
        if records is None:
            return None
        return build_board_view(records, viewer=viewer)
