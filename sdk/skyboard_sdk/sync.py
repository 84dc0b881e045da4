"""
Background sync between the local cache and repositories.

Push: staged writes of the cache principal are sent to their repository
oldest first, one at a time. A network failure leaves the write pending
for the next round; a rejection marks it errored. Errored writes are
moved back to pending every few rounds so nothing is silently dropped.

Pull: the records of a board's participants are fetched into the cache
with bounded concurrency. A participant that cannot be reached is
skipped this round.

Invariants:
    - Writes for one principal are strictly sequential
    - A record is marked synced only after the repository accepted it
      and only if it was not rewritten while the push was in flight
    - Pull never overwrites the principal's unsynced local records
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from .errors import NetworkError, RepoWriteError
from .local_cache import LocalCache, SyncStatus, UnsyncedWrite
from .repo import DEFAULT_CONCURRENCY, RepoClient, gather_settled
from .uris import BOARD, BOARD_SCOPED, TRUST, parse_uri
from .validate import validate_record

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one push round."""

    synced: int = 0
    failed: int = 0
    deferred: int = 0


@dataclass
class PullResult:
    """Outcome of one pull round."""

    fetched: int = 0
    kept_local: int = 0
    participants: int = 0


class SyncWorker:
    """Pushes staged writes and pulls remote records for one principal.

    Example:
        >>> worker = SyncWorker(cache, repo)
        >>> result = await worker.sync_once()
        >>> await worker.pull_board(board_uri)
    """

    def __init__(
        self,
        cache: LocalCache,
        repo: RepoClient,
        fetch_concurrency: int = DEFAULT_CONCURRENCY,
        error_reset_rounds: int = 12,
    ) -> None:
        self.cache = cache
        self.repo = repo
        self.fetch_concurrency = fetch_concurrency
        self.error_reset_rounds = max(1, error_reset_rounds)
        self._rounds = 0
        self._running = False
        self._stop_event = asyncio.Event()

    async def sync_once(self, retry_errors: bool = False) -> SyncResult:
        """Push every pending write once."""
        if retry_errors:
            reset = await self.cache.reset_errors()
            if reset:
                logger.info(f"Retrying {reset} errored writes")

        result = SyncResult()
        for write in await self.cache.list_unsynced():
            if write.status is not SyncStatus.PENDING:
                continue
            with self.cache.pushing(write):
                if not await self.cache.is_current(write):
                    logger.debug(f"Skipping superseded write {write.collection}/{write.rkey}")
                    continue
                await self._push(write, result)
        return result

    async def _push(self, write: UnsyncedWrite, result: SyncResult) -> None:
        try:
            if write.is_delete:
                await self.repo.delete_record(write.did, write.collection, write.rkey)
            else:
                assert write.value is not None
                await self.repo.put_record(write.did, write.collection, write.rkey, write.value)
        except NetworkError as e:
            logger.warning(
                f"Repository unreachable, keeping {write.collection}/{write.rkey} pending: "
                f"{e.message}"
            )
            result.deferred += 1
            return
        except RepoWriteError as e:
            logger.error(
                f"Repository rejected {write.collection}/{write.rkey}: {e.message}",
                extra={"status_code": e.status_code},
            )
            await self.cache.mark_error(write, e.message)
            result.failed += 1
            return
        await self.cache.mark_synced(write)
        result.synced += 1

    async def pull_board(self, board_uri: str, participants: Iterable[str] = ()) -> PullResult:
        """Fetch a board and its participants' records into the cache.

        The owner and every principal the owner trusts on the board are
        always included; `participants` adds more.
        """
        key = parse_uri(board_uri)
        if key is None or key.collection != BOARD:
            raise ValueError(f"Not a board URI: {board_uri}")

        result = PullResult()
        value = await self.repo.get_record(key.did, BOARD, key.rkey)
        if value is not None:
            validated = validate_record(BOARD, value)
            if validated is not None:
                await self._apply(result, BOARD, key.did, key.rkey, validated)

        dids = {key.did, *participants}
        owner_trusts = await self.repo.fetch_board_records(key.did, board_uri, [TRUST])
        for record in owner_trusts:
            await self._apply(result, record.collection, record.did, record.rkey, record.value)
            dids.add(record.value["trustedDid"])

        async def fetch(did: str) -> None:
            collections = [c for c in BOARD_SCOPED if not (did == key.did and c == TRUST)]
            for record in await self.repo.fetch_board_records(did, board_uri, collections):
                await self._apply(result, record.collection, record.did, record.rkey, record.value)

        ordered = sorted(dids)
        await gather_settled(ordered, fetch, concurrency=self.fetch_concurrency)
        result.participants = len(ordered)
        return result

    async def _apply(self, result: PullResult, collection: str, did: str, rkey: str, value: dict) -> None:
        if await self.cache.apply_remote(collection, did, rkey, value):
            result.fetched += 1
        else:
            result.kept_local += 1

    async def run(self, interval_seconds: float = 5.0) -> None:
        """Push on an interval until stop() is called."""
        self._running = True
        self._stop_event.clear()
        logger.info(f"Sync worker started for {self.cache.principal}")
        while self._running:
            self._rounds += 1
            retry_errors = self._rounds % self.error_reset_rounds == 0
            try:
                await self.sync_once(retry_errors=retry_errors)
            except Exception as e:
                logger.error(f"Sync round failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Sync worker stopped")

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
