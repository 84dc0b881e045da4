"""
Board client for the local-first workflow.

Every write is staged in the LocalCache as a pending record and becomes
visible immediately through materialize; the SyncWorker pushes it to the
principal's repository later. Edits to tasks are never written into the
task record: each edit is a new op carrying only the changed fields.

Example:
    >>> async with BoardClient.open(ClientSettings(principal="did:plc:alice")) as client:
    ...     board_uri = await client.create_board("Sprint", ["Todo", "Doing", "Done"])
    ...     view = await client.get_board(board_uri)
    ...     task_uri = await client.create_task(board_uri, "Fix bug", view.board.columns[0].id)
    ...     await client.move_task(task_uri, view.board.columns[1].id)

Invariants:
    - A move writes one op for the moved task; neighbours are untouched
    - Only the board owner writes trust records that count
    - Only a task's author may delete it
    - createdAt values written by one client strictly increase
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import httpx

from .config import ClientSettings
from .errors import NotFoundError, PermissionDeniedError
from .local_cache import LocalCache
from .materialize import BoardView, MaterializedTask
from .positions import position_between
from .records import UNSET, OpFields, PermissionRule
from .repo import IdentityResolver, RepoClient
from .sync import SyncWorker
from .uris import APPROVAL, BOARD, COMMENT, OP, REACTION, TASK, TRUST, build_uri, generate_tid, parse_uri

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MonotonicClock:
    """ISO-8601 UTC timestamps with millisecond precision that never repeat.

    A reading at or before the previous one is bumped to one millisecond
    after it, so two writes by the same principal never tie.
    """

    def __init__(self, now: Callable[[], datetime] = _utc_now) -> None:
        self._now = now
        self._last: datetime | None = None

    def __call__(self) -> str:
        current = self._now().astimezone(timezone.utc)
        current = current.replace(microsecond=current.microsecond - current.microsecond % 1000)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(milliseconds=1)
        self._last = current
        return current.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class BoardClient:
    """Stages board, task, op and trust records for one principal."""

    def __init__(
        self,
        cache: LocalCache,
        sync: SyncWorker | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self.cache = cache
        self.sync = sync
        self._clock = clock or MonotonicClock()
        self._http: httpx.AsyncClient | None = None

    @property
    def principal(self) -> str:
        return self.cache.principal

    @classmethod
    def open(cls, settings: ClientSettings) -> BoardClient:
        """Build a client with its cache, repository client and sync worker."""
        if not settings.principal:
            raise ValueError("SKYBOARD_PRINCIPAL is required")
        cache = LocalCache(
            settings.principal,
            settings.db_path,
            busy_timeout_ms=settings.busy_timeout_ms,
            max_retries=settings.busy_retries,
        )
        http = httpx.AsyncClient(timeout=settings.request_timeout)
        repo = RepoClient(
            http,
            IdentityResolver(http, settings.plc_directory),
            access_token=settings.access_token,
        )
        sync = SyncWorker(
            cache,
            repo,
            fetch_concurrency=settings.fetch_concurrency,
            error_reset_rounds=settings.error_reset_rounds,
        )
        client = cls(cache, sync)
        client._http = http
        return client

    async def __aenter__(self) -> BoardClient:
        await self.cache.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self.sync is not None:
            self.sync.stop()
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # --- Boards ---

    async def create_board(
        self,
        name: str,
        columns: Iterable[str],
        description: str | None = None,
        labels: Iterable[dict[str, Any]] = (),
        rules: Iterable[PermissionRule] | None = None,
        open: bool | None = None,
    ) -> str:
        """Create a board owned by the principal.

        Args:
            name: Board name
            columns: Column names, in display order
            description: Optional description
            labels: Label dicts ({id, name, color, description?})
            rules: Permission rules; None keeps the default rules
            open: Accept proposals from anyone; inferred from rules when None

        Returns:
            Board URI
        """
        rkey = generate_tid()
        value: dict[str, Any] = {
            "name": name,
            "columns": [
                {"id": uuid.uuid4().hex[:12], "name": column, "order": index}
                for index, column in enumerate(columns)
            ],
            "createdAt": self._clock(),
        }
        if description is not None:
            value["description"] = description
        labels = list(labels)
        if labels:
            value["labels"] = labels
        if rules is not None:
            value["permissions"] = {"rules": [rule.to_dict() for rule in rules]}
        if open is not None:
            value["open"] = open
        await self.cache.put_local(BOARD, rkey, value)
        return build_uri(self.principal, BOARD, rkey)

    async def get_board(self, board_uri: str) -> BoardView:
        """Optimistic view of a board from the local cache.

        Raises:
            NotFoundError: If the board is not cached
        """
        view = await self.cache.board_view(board_uri)
        if view is None:
            raise NotFoundError(f"Board not found: {board_uri}", uri=board_uri)
        return view

    async def refresh_board(self, board_uri: str, participants: Iterable[str] = ()) -> BoardView:
        """Pull remote records for a board, then return the fresh view."""
        if self.sync is None:
            raise RuntimeError("Client has no sync worker")
        await self.sync.pull_board(board_uri, participants)
        return await self.get_board(board_uri)

    # --- Tasks ---

    async def _get_task(self, task_uri: str) -> tuple[BoardView, MaterializedTask]:
        key = parse_uri(task_uri)
        if key is None or key.collection != TASK:
            raise ValueError(f"Not a task URI: {task_uri}")
        value = await self.cache.get_record(TASK, key.did, key.rkey)
        if value is None:
            raise NotFoundError(f"Task not found: {task_uri}", uri=task_uri)
        view = await self.get_board(value["boardUri"])
        task = view.task(task_uri)
        if task is None:
            raise NotFoundError(f"Task not found: {task_uri}", uri=task_uri)
        return view, task

    @staticmethod
    def _neighbour_position(view: BoardView, uri: str | None) -> str | None:
        if uri is None:
            return None
        task = view.task(uri)
        return task.effective_position if task is not None else None

    def _drop_position(
        self,
        view: BoardView,
        column_id: str,
        after_uri: str | None,
        before_uri: str | None,
        moving_uri: str | None = None,
    ) -> str:
        if after_uri is None and before_uri is None:
            column = [t for t in view.column(column_id) if t.uri != moving_uri]
            last = column[-1].effective_position if column else None
            return position_between(last, None)
        return position_between(
            self._neighbour_position(view, after_uri),
            self._neighbour_position(view, before_uri),
        )

    async def create_task(
        self,
        board_uri: str,
        title: str,
        column_id: str,
        description: str | None = None,
        label_ids: Iterable[str] | None = None,
        after_uri: str | None = None,
        before_uri: str | None = None,
    ) -> str:
        """Create a task, appended to its column unless neighbours are given.

        Returns:
            Task URI
        """
        view = await self.get_board(board_uri)
        rkey = generate_tid()
        value: dict[str, Any] = {
            "title": title,
            "columnId": column_id,
            "boardUri": board_uri,
            "position": self._drop_position(view, column_id, after_uri, before_uri),
            "createdAt": self._clock(),
        }
        if description is not None:
            value["description"] = description
        if label_ids is not None:
            value["labelIds"] = list(label_ids)
        await self.cache.put_local(TASK, rkey, value)
        return build_uri(self.principal, TASK, rkey)

    async def _write_op(self, task: MaterializedTask, fields: OpFields) -> str:
        if not fields.touched():
            raise ValueError("An op must change at least one field")
        rkey = generate_tid()
        await self.cache.put_local(
            OP,
            rkey,
            {
                "targetTaskUri": task.uri,
                "boardUri": task.board_uri,
                "fields": fields.to_dict(),
                "createdAt": self._clock(),
            },
        )
        return build_uri(self.principal, OP, rkey)

    async def update_task(
        self,
        task_uri: str,
        title: Any = UNSET,
        description: Any = UNSET,
        label_ids: Any = UNSET,
    ) -> str | None:
        """Write an op with the fields that differ from the effective task.

        Pass description=None to clear the description.

        Returns:
            Op URI, or None when nothing changed
        """
        _, task = await self._get_task(task_uri)
        changes: dict[str, Any] = {}
        if title is not UNSET and title != task.effective_title:
            changes["title"] = title
        if description is not UNSET and description != task.effective_description:
            changes["description"] = description
        if label_ids is not UNSET:
            label_ids = tuple(label_ids) if label_ids is not None else None
            if (label_ids or ()) != task.effective_label_ids:
                changes["label_ids"] = label_ids
        if not changes:
            return None
        return await self._write_op(task, OpFields(**changes))

    async def move_task(
        self,
        task_uri: str,
        column_id: str | None = None,
        after_uri: str | None = None,
        before_uri: str | None = None,
    ) -> str:
        """Move a task to a column and/or between two neighbours.

        Returns:
            Op URI
        """
        view, task = await self._get_task(task_uri)
        target_column = column_id or task.effective_column_id
        position = self._drop_position(view, target_column, after_uri, before_uri, moving_uri=task.uri)
        if target_column != task.effective_column_id:
            fields = OpFields(column_id=target_column, position=position)
        else:
            fields = OpFields(position=position)
        return await self._write_op(task, fields)

    async def delete_task(self, task_uri: str) -> None:
        """Delete one of the principal's own tasks.

        Raises:
            PermissionDeniedError: If the principal did not author the task
        """
        key = parse_uri(task_uri)
        if key is None or key.collection != TASK:
            raise ValueError(f"Not a task URI: {task_uri}")
        if key.did != self.principal:
            raise PermissionDeniedError(
                "Only the author can delete a task", actor=self.principal, uri=task_uri
            )
        await self.cache.delete_local(TASK, key.rkey)

    # --- Trust ---

    async def grant_trust(self, board_uri: str, did: str) -> str:
        """Trust did on a board owned by the principal.

        Returns:
            Trust URI (existing one if did is already trusted)
        """
        view = await self.get_board(board_uri)
        if view.board.did != self.principal:
            raise PermissionDeniedError(
                "Only the board owner can grant trust", actor=self.principal, uri=board_uri
            )
        for trust in view.records.trusts:
            if trust.did == self.principal and trust.trusted_did == did:
                return trust.uri
        rkey = generate_tid()
        await self.cache.put_local(
            TRUST,
            rkey,
            {"trustedDid": did, "boardUri": board_uri, "createdAt": self._clock()},
        )
        logger.info(f"Granted trust to {did}", extra={"board_uri": board_uri})
        return build_uri(self.principal, TRUST, rkey)

    async def revoke_trust(self, board_uri: str, did: str) -> int:
        """Delete the principal's trust records for did on a board.

        Returns:
            Number of trust records removed
        """
        view = await self.get_board(board_uri)
        removed = 0
        for trust in view.records.trusts:
            if trust.did == self.principal and trust.trusted_did == did:
                await self.cache.delete_local(TRUST, trust.rkey)
                removed += 1
        if removed:
            logger.info(f"Revoked trust for {did}", extra={"board_uri": board_uri})
        return removed

    # --- Comments, approvals, reactions ---

    async def add_comment(self, task_uri: str, text: str) -> str:
        _, task = await self._get_task(task_uri)
        rkey = generate_tid()
        await self.cache.put_local(
            COMMENT,
            rkey,
            {
                "targetTaskUri": task.uri,
                "boardUri": task.board_uri,
                "text": text,
                "createdAt": self._clock(),
            },
        )
        return build_uri(self.principal, COMMENT, rkey)

    async def approve(self, board_uri: str, target_uri: str) -> str:
        """Approve a pending proposal (a task or an op) on a board."""
        rkey = generate_tid()
        await self.cache.put_local(
            APPROVAL,
            rkey,
            {"targetUri": target_uri, "boardUri": board_uri, "createdAt": self._clock()},
        )
        return build_uri(self.principal, APPROVAL, rkey)

    async def react(self, task_uri: str, emoji: str) -> str:
        _, task = await self._get_task(task_uri)
        rkey = generate_tid()
        await self.cache.put_local(
            REACTION,
            rkey,
            {
                "targetTaskUri": task.uri,
                "boardUri": task.board_uri,
                "emoji": emoji,
                "createdAt": self._clock(),
            },
        )
        return build_uri(self.principal, REACTION, rkey)
