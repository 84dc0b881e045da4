"""
Aggregator SQLite store for the Skyboard appview.

This module manages the single SQLite database holding every Skyboard
record seen on the firehose or fetched by backfill:
- Record tables per collection (see sdk RecordStore)
- Board participants discovered from records and trust grants
- The persisted firehose cursor

The store is a cache of public repository data. It can be rebuilt by
backfilling every known board.

Invariants:
    - Record writes are single-record transactions
    - Upserting a record also registers its author as a participant of
      its board; trust records also register the trusted principal
    - jetstream_cursor holds at most one row

How to change safely:
    - Schema migrations must be additive
    - Keep participant registration inside the record transaction so a
      backfill never misses an author whose record is stored

Table schema:
    board_participants:
        - did TEXT
        - board_uri TEXT
        - discovered_at INTEGER (Unix ms)
        - last_fetched_at INTEGER (Unix ms, NULL until backfilled)
        - PRIMARY KEY (did, board_uri)

    jetstream_cursor:
        - id INTEGER (always 1)
        - cursor INTEGER (time_us of the last processed event)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any

from sdk.skyboard_sdk.store import RECORD_TABLES, RecordStore
from sdk.skyboard_sdk.uris import TRUST

logger = logging.getLogger(__name__)


class AggregatorStore(RecordStore):
    """SQLite store for the aggregator service.

    Example:
        >>> store = AggregatorStore("./data/skyboard.db")
        >>> await store.initialize()
        >>> board_uri = await store.upsert_record(TASK, did, rkey, value)
        >>> view = await store.board_view(board_uri)
    """

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        super()._create_schema(conn)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS board_participants (
                did TEXT NOT NULL,
                board_uri TEXT NOT NULL,
                discovered_at INTEGER NOT NULL,
                last_fetched_at INTEGER,
                PRIMARY KEY (did, board_uri)
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_participants_board ON board_participants (board_uri)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS jetstream_cursor (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                cursor INTEGER NOT NULL
            )
        """)

    @staticmethod
    def _add_participant(conn: sqlite3.Connection, did: str, board_uri: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO board_participants (did, board_uri, discovered_at) "
            "VALUES (?, ?, ?)",
            (did, board_uri, int(time.time() * 1000)),
        )

    async def upsert_record(
        self,
        collection: str,
        did: str,
        rkey: str,
        value: dict[str, Any],
    ) -> str:
        """Insert or overwrite a validated record and register participants.

        Returns:
            URI of the board the record belongs to
        """

        def statements(conn: sqlite3.Connection) -> str:
            board_uri = self._upsert_row(conn, collection, did, rkey, value)
            self._add_participant(conn, did, board_uri)
            if collection == TRUST:
                self._add_participant(conn, value["trustedDid"], board_uri)
            return board_uri

        board_uri = await self._retry_busy(lambda: self._write(statements))
        logger.debug(
            "Upserted record",
            extra={"collection": collection, "did": did, "rkey": rkey, "board_uri": board_uri},
        )
        return board_uri

    async def add_participant(self, did: str, board_uri: str) -> None:
        await self._retry_busy(
            lambda: self._write(lambda conn: self._add_participant(conn, did, board_uri))
        )

    async def list_participants(self, board_uri: str) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT did FROM board_participants WHERE board_uri = ? ORDER BY did",
                (board_uri,),
            ).fetchall()
        return [row["did"] for row in rows]

    async def mark_participant_fetched(self, did: str, board_uri: str) -> None:
        def statements(conn: sqlite3.Connection) -> None:
            self._add_participant(conn, did, board_uri)
            conn.execute(
                "UPDATE board_participants SET last_fetched_at = ? WHERE did = ? AND board_uri = ?",
                (int(time.time() * 1000), did, board_uri),
            )

        await self._retry_busy(lambda: self._write(statements))

    async def participant_fetched_at(self, did: str, board_uri: str) -> int | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT last_fetched_at FROM board_participants WHERE did = ? AND board_uri = ?",
                (did, board_uri),
            ).fetchone()
        return row["last_fetched_at"] if row else None

    async def load_cursor(self) -> int | None:
        """Last persisted firehose cursor, or None on first start."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT cursor FROM jetstream_cursor WHERE id = 1").fetchone()
        return row["cursor"] if row else None

    async def save_cursor(self, cursor: int) -> None:
        await self._retry_busy(
            lambda: self._write(
                lambda conn: conn.execute(
                    "INSERT INTO jetstream_cursor (id, cursor) VALUES (1, ?) "
                    "ON CONFLICT(id) DO UPDATE SET cursor = excluded.cursor",
                    (cursor,),
                )
            )
        )

    async def get_stats(self) -> dict[str, int]:
        """Row counts per table."""
        stats: dict[str, int] = {}
        with self._get_connection() as conn:
            for table in (*RECORD_TABLES.values(), "board_participants"):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return stats

    async def board_exists(self, board_uri: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute("SELECT 1 FROM boards WHERE uri = ?", (board_uri,)).fetchone()
        return row is not None

