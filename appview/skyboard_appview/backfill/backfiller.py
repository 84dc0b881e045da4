"""
On-demand backfill of boards from participants' repositories.

A board is backfilled when it is requested but unknown, and every known
board is backfilled during a reconciliation sweep after the firehose
cursor went stale.

Backfill of one board:
    1. Fetch the board record from the owner's repository
    2. Fetch the owner's trust records for the board (discovers trusted
       participants)
    3. Fetch tasks, ops, comments, approvals and reactions from every
       known participant, at most `concurrency` at a time
    4. Drop stored records of a principal that a complete listing no
       longer returns (deleted upstream while the cursor was stale)

Invariants:
    - One participant's failure never aborts the others
    - Records are validated before they are stored
    - Nothing is partially applied: a record is stored whole or not at all
    - Records are pruned only against listings read to the last page

How to change safely:
    - Keep concurrency small; repositories are run by third parties
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from sdk.skyboard_sdk.repo import DEFAULT_CONCURRENCY, BoardListing, RepoClient, gather_settled
from sdk.skyboard_sdk.uris import APPROVAL, BOARD, COMMENT, OP, REACTION, TASK, TRUST, build_uri, parse_uri
from sdk.skyboard_sdk.validate import validate_record

from ..apply.aggregator_store import AggregatorStore

logger = logging.getLogger(__name__)

PARTICIPANT_COLLECTIONS = (TASK, OP, COMMENT, APPROVAL, REACTION)


@dataclass
class ReconcileResult:
    """Outcome of a reconciliation sweep."""

    boards: int = 0
    refreshed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Backfiller:
    """Fetches boards and their participants' records into the store."""

    def __init__(
        self,
        store: AggregatorStore,
        repo: RepoClient,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.store = store
        self.repo = repo
        self.concurrency = concurrency

    async def backfill_board(self, did: str, rkey: str) -> bool:
        """Backfill one board.

        Returns:
            False when the board record could not be fetched or is invalid
        """
        board_uri = build_uri(did, BOARD, rkey)
        logger.info(f"Backfilling board {board_uri}")

        value = await self.repo.get_record(did, BOARD, rkey)
        if value is None:
            logger.warning(f"Could not fetch board record {board_uri}")
            return False
        validated = validate_record(BOARD, value)
        if validated is None:
            return False
        await self.store.upsert_record(BOARD, did, rkey, validated)

        started_ms = int(time.time() * 1000)
        owner = await self.repo.fetch_board_listing(did, board_uri, [TRUST])
        for record in owner.records:
            await self.store.upsert_record(record.collection, record.did, record.rkey, record.value)
        await self._prune(did, board_uri, owner, started_ms)

        participants = await self.store.list_participants(board_uri)
        results = await gather_settled(
            participants,
            lambda participant: self._fetch_participant(participant, board_uri, started_ms),
            concurrency=self.concurrency,
        )
        failed = sum(1 for r in results if isinstance(r, BaseException))
        logger.info(
            f"Backfilled board {board_uri}",
            extra={"participants": len(participants), "failed": failed},
        )
        return True

    async def backfill_uri(self, board_uri: str) -> bool:
        key = parse_uri(board_uri)
        if key is None or key.collection != BOARD:
            logger.warning(f"Not a board URI: {board_uri}")
            return False
        return await self.backfill_board(key.did, key.rkey)

    async def _fetch_participant(self, did: str, board_uri: str, started_ms: int) -> int:
        listing = await self.repo.fetch_board_listing(did, board_uri, PARTICIPANT_COLLECTIONS)
        for record in listing.records:
            await self.store.upsert_record(record.collection, record.did, record.rkey, record.value)
        await self._prune(did, board_uri, listing, started_ms)
        await self.store.mark_participant_fetched(did, board_uri)
        return len(listing.records)

    async def _prune(self, did: str, board_uri: str, listing: BoardListing, started_ms: int) -> int:
        removed = 0
        for collection in sorted(listing.complete):
            keep = {r.rkey for r in listing.records if r.collection == collection}
            removed += await self.store.prune_board_records(
                collection, did, board_uri, keep, indexed_before_ms=started_ms
            )
        if removed:
            logger.info(
                f"Removed {removed} records deleted upstream",
                extra={"did": did, "board_uri": board_uri},
            )
        return removed

    async def reconcile_all(self, on_board: Callable[[str], object] | None = None) -> ReconcileResult:
        """Backfill every known board, calling on_board after each one.

        Used when the firehose cursor is too stale to resume.
        """
        result = ReconcileResult()
        board_uris = await self.store.list_board_uris()
        result.boards = len(board_uris)
        logger.warning(f"Reconciliation sweep over {len(board_uris)} boards")
        for board_uri in board_uris:
            try:
                ok = await self.backfill_uri(board_uri)
            except Exception as e:
                logger.error(f"Reconciliation of {board_uri} failed: {e}", exc_info=True)
                ok = False
            if ok:
                result.refreshed.append(board_uri)
            else:
                result.failed.append(board_uri)
            if on_board is not None:
                on_board(board_uri)
        return result
