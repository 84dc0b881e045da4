"""
Personal data repository client (atproto XRPC over httpx).

Provides:
- IdentityResolver: DID -> repository endpoint, cached
- RepoClient: listRecords / getRecord / putRecord / deleteRecord
- gather_settled: bounded-concurrency best-effort join

Reads degrade to empty results: an unresolvable DID, a transport error
or a non-success status is logged and treated as "no data from this
source this round". Writes raise so the caller can keep the record
pending and retry.

Invariants:
    - At most one write per principal is in flight
    - listRecords is consumed to exhaustion; a failing page stops paging
      and keeps what was already read
    - Records from other boards are never returned by fetch_board_records
    - A listing is reported complete only when its last page was read

How to change safely:
    - Keep page size at or under 100; repositories reject larger limits
    - Do not cache negative identity lookups; the next round must retry
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx

from .errors import IdentityResolutionError, NetworkError, RepoWriteError
from .uris import parse_uri
from .validate import validate_record

logger = logging.getLogger(__name__)

DEFAULT_PLC_DIRECTORY = "https://plc.directory"
PAGE_LIMIT = 100
DEFAULT_CONCURRENCY = 3

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class FetchedRecord:
    """A validated record read from a repository."""

    collection: str
    did: str
    rkey: str
    value: dict[str, Any]


@dataclass
class BoardListing:
    """Records of one principal for one board.

    Attributes:
        records: Validated records scoped to the board
        complete: Collections whose listing was read to the last page
    """

    records: list[FetchedRecord] = field(default_factory=list)
    complete: set[str] = field(default_factory=set)


async def gather_settled(
    items: Iterable[T],
    func: Callable[[T], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[R | BaseException]:
    """Run func over items with at most `concurrency` in flight.

    Every item runs to completion; one failure does not cancel the
    others. Failures are logged and returned in place of the result.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    items = list(items)

    async def run(item: T) -> R:
        async with semaphore:
            return await func(item)

    results = await asyncio.gather(*(run(item) for item in items), return_exceptions=True)
    for item, result in zip(items, results):
        if isinstance(result, BaseException):
            logger.warning(f"Fetch for {item} failed: {result!r}")
    return results


class IdentityResolver:
    """Resolves a DID to its repository service endpoint.

    did:plc documents come from the PLC directory, did:web documents from
    the host's /.well-known/did.json.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        plc_directory: str = DEFAULT_PLC_DIRECTORY,
    ) -> None:
        self._client = client
        self._plc_directory = plc_directory.rstrip("/")
        self._cache: dict[str, str] = {}

    def _document_url(self, did: str) -> str:
        if did.startswith("did:plc:"):
            return f"{self._plc_directory}/{did}"
        if did.startswith("did:web:"):
            host = did[len("did:web:") :].replace(":", "/")
            return f"https://{host}/.well-known/did.json"
        raise IdentityResolutionError(f"Unsupported DID method: {did}", did=did)

    async def resolve(self, did: str) -> str:
        """Return the repository endpoint for did.

        Raises:
            IdentityResolutionError: If the document cannot be fetched or
                lists no repository service
        """
        cached = self._cache.get(did)
        if cached:
            return cached

        url = self._document_url(did)
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise IdentityResolutionError(f"DID document fetch failed: {e}", did=did) from e
        if response.status_code != 200:
            raise IdentityResolutionError(
                f"DID document fetch returned {response.status_code}", did=did
            )

        try:
            services = response.json().get("service") or []
        except ValueError as e:
            raise IdentityResolutionError("DID document is not valid JSON", did=did) from e
        for service in services:
            if service.get("id") == "#atproto_pds" or service.get("type") == "AtprotoPersonalDataServer":
                endpoint = service.get("serviceEndpoint")
                if endpoint:
                    self._cache[did] = endpoint.rstrip("/")
                    return self._cache[did]
        raise IdentityResolutionError("DID document has no repository service", did=did)

    def set_endpoint(self, did: str, endpoint: str) -> None:
        """Pin an endpoint, skipping resolution (local development, tests)."""
        self._cache[did] = endpoint.rstrip("/")


class RepoClient:
    """Record reads and writes against principals' repositories.

    Example:
        >>> async with httpx.AsyncClient(timeout=10.0) as http:
        ...     repo = RepoClient(http)
        ...     records = await repo.list_records("did:plc:abc", TASK)
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        resolver: IdentityResolver | None = None,
        access_token: str | None = None,
    ) -> None:
        self._client = client
        self.resolver = resolver or IdentityResolver(client)
        self._access_token = access_token
        self._write_locks: dict[str, asyncio.Lock] = {}

    async def _endpoint_or_none(self, did: str) -> str | None:
        try:
            return await self.resolver.resolve(did)
        except IdentityResolutionError as e:
            logger.warning(f"Could not resolve repository for {did}: {e.message}")
            return None

    async def list_records(self, did: str, collection: str) -> list[dict[str, Any]]:
        """All records of a collection in did's repository.

        Returns:
            List of {uri, value} dicts; empty when the repository is
            unreachable
        """
        records, _ = await self.list_records_checked(did, collection)
        return records

    async def list_records_checked(
        self, did: str, collection: str
    ) -> tuple[list[dict[str, Any]], bool]:
        """Like list_records, also reporting whether every page was read.

        Returns:
            (records, complete); complete is False when resolution, a
            page request or a page body failed
        """
        endpoint = await self._endpoint_or_none(did)
        if endpoint is None:
            return [], False

        records: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"repo": did, "collection": collection, "limit": PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            try:
                response = await self._client.get(
                    f"{endpoint}/xrpc/com.atproto.repo.listRecords", params=params
                )
            except httpx.HTTPError as e:
                logger.warning(f"listRecords {collection} for {did} failed: {e!r}")
                return records, False
            if response.status_code != 200:
                logger.warning(
                    f"listRecords {collection} for {did} returned {response.status_code}"
                )
                return records, False
            try:
                data = response.json()
            except ValueError:
                logger.warning(f"listRecords {collection} for {did} returned a non-JSON body")
                return records, False
            records.extend(data.get("records") or [])
            cursor = data.get("cursor")
            if not cursor:
                return records, True

    async def get_record(self, did: str, collection: str, rkey: str) -> dict[str, Any] | None:
        """A single record's value, or None when absent or unreachable."""
        endpoint = await self._endpoint_or_none(did)
        if endpoint is None:
            return None
        try:
            response = await self._client.get(
                f"{endpoint}/xrpc/com.atproto.repo.getRecord",
                params={"repo": did, "collection": collection, "rkey": rkey},
            )
        except httpx.HTTPError as e:
            logger.warning(f"getRecord {collection}/{rkey} for {did} failed: {e!r}")
            return None
        if response.status_code != 200:
            return None
        try:
            return response.json().get("value")
        except ValueError:
            logger.warning(f"getRecord {collection}/{rkey} for {did} returned a non-JSON body")
            return None

    async def fetch_board_records(
        self,
        did: str,
        board_uri: str,
        collections: Iterable[str],
    ) -> list[FetchedRecord]:
        """Validated records of did that belong to board_uri."""
        listing = await self.fetch_board_listing(did, board_uri, collections)
        return listing.records

    async def fetch_board_listing(
        self,
        did: str,
        board_uri: str,
        collections: Iterable[str],
    ) -> BoardListing:
        """Validated records of did for board_uri, with the collections read in full."""
        listing = BoardListing()
        for collection in collections:
            items, complete = await self.list_records_checked(did, collection)
            if complete:
                listing.complete.add(collection)
            for item in items:
                value = item.get("value") or {}
                if value.get("boardUri") != board_uri:
                    continue
                key = parse_uri(item.get("uri", ""))
                if key is None:
                    continue
                validated = validate_record(collection, value)
                if validated is None:
                    continue
                listing.records.append(FetchedRecord(collection, did, key.rkey, validated))
        return listing

    def _write_lock(self, did: str) -> asyncio.Lock:
        lock = self._write_locks.get(did)
        if lock is None:
            lock = self._write_locks[did] = asyncio.Lock()
        return lock

    def _headers(self) -> dict[str, str]:
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}
        return {}

    async def _write(self, did: str, method: str, body: dict[str, Any]) -> None:
        async with self._write_lock(did):
            try:
                endpoint = await self.resolver.resolve(did)
            except IdentityResolutionError as e:
                raise NetworkError(e.message, did=did) from e
            try:
                response = await self._client.post(
                    f"{endpoint}/xrpc/{method}", json=body, headers=self._headers()
                )
            except httpx.HTTPError as e:
                raise NetworkError(f"{method} failed: {e!r}", did=did) from e
            if response.status_code != 200:
                raise RepoWriteError(
                    f"{method} returned {response.status_code}",
                    did=did,
                    status_code=response.status_code,
                )

    async def put_record(
        self, did: str, collection: str, rkey: str, record: dict[str, Any]
    ) -> None:
        """Write a record into did's repository.

        Raises:
            NetworkError: Repository unreachable; safe to retry unchanged
            RepoWriteError: Repository rejected the write
        """
        body = {
            "repo": did,
            "collection": collection,
            "rkey": rkey,
            "record": {"$type": collection, **record},
        }
        await self._write(did, "com.atproto.repo.putRecord", body)

    async def delete_record(self, did: str, collection: str, rkey: str) -> None:
        """Delete a record from did's repository."""
        body = {"repo": did, "collection": collection, "rkey": rkey}
        await self._write(did, "com.atproto.repo.deleteRecord", body)
