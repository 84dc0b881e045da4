"""
Materialization engine: effective task state from immutable records.

A task's effective state is folded from its base record and the ops
targeting it. Ops are split into applied and pending by the Evaluator;
applied ops are replayed in (created_at, uri) order and each touched
field is replaced only when the op is strictly newer than the value it
would replace.

Both read models (aggregator store and local-first cache) call
materialize_board(); neither re-implements the fold.

Invariants:
    - Output depends only on the task, its ops, the board's trust records
      and rules; input order does not matter
    - Equal timestamps never override: among equal-timestamp ops the one
      with the smaller URI claims the field first and keeps it
    - An explicit None in an op is a value, not an absent field
    - Ops the Evaluator does not ALLOW never change effective state; they
      are reported in pending_ops

How to change safely:
    - New folded fields must be added to records.MUTABLE_FIELDS and to
      MaterializedTask
    - Keep to_dict() keys stable; the HTTP API and browser clients read them
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, NamedTuple

from .permissions import Decision, Evaluator
from .positions import key_at_rank, sort_tasks
from .records import MUTABLE_FIELDS, Board, BoardRecords, Op, Task, Trust


class _FieldState(NamedTuple):
    value: Any
    timestamp: str
    author: str


@dataclass(frozen=True)
class MaterializedTask:
    """A task with every applied op folded in."""

    uri: str
    did: str
    rkey: str
    board_uri: str
    title: str
    description: str | None
    column_id: str
    position: str | None
    order: int | None
    label_ids: tuple[str, ...] | None
    created_at: str
    updated_at: str | None
    owner_did: str
    effective_title: str
    effective_description: str | None
    effective_column_id: str
    effective_position: str
    effective_label_ids: tuple[str, ...]
    last_modified_by: str
    last_modified_at: str
    applied_ops: tuple[Op, ...]
    pending_ops: tuple[Op, ...]
    proposed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "did": self.did,
            "rkey": self.rkey,
            "boardUri": self.board_uri,
            "title": self.title,
            "description": self.description,
            "columnId": self.column_id,
            "position": self.position,
            "order": self.order,
            "labelIds": list(self.label_ids) if self.label_ids is not None else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "ownerDid": self.owner_did,
            "effectiveTitle": self.effective_title,
            "effectiveDescription": self.effective_description,
            "effectiveColumnId": self.effective_column_id,
            "effectivePosition": self.effective_position,
            "effectiveLabelIds": list(self.effective_label_ids),
            "lastModifiedBy": self.last_modified_by,
            "lastModifiedAt": self.last_modified_at,
            "appliedOps": [_op_dict(op) for op in self.applied_ops],
            "pendingOps": [_op_dict(op) for op in self.pending_ops],
            "proposed": self.proposed,
        }


def _op_dict(op: Op) -> dict[str, Any]:
    return {"uri": op.uri, "did": op.did, "rkey": op.rkey, **op.to_record()}


def _op_order(op: Op) -> tuple[str, str]:
    return (op.created_at, op.uri)


def base_position(task: Task) -> str:
    """Stored position, or one derived from the legacy integer order."""
    return task.position or key_at_rank(task.order)


def partition_ops(
    task: Task,
    ops: Iterable[Op],
    evaluator: Evaluator,
) -> tuple[list[Op], list[Op]]:
    """Split the ops targeting task into (applied, pending), both sorted."""
    applied: list[Op] = []
    pending: list[Op] = []
    for op in ops:
        if op.target_task_uri != task.uri:
            continue
        decision = evaluator.decide_op_fields(op.did, op.fields, task.did, task.column_id)
        if decision is Decision.ALLOW:
            applied.append(op)
        else:
            pending.append(op)
    applied.sort(key=_op_order)
    pending.sort(key=_op_order)
    return applied, pending


def collect_pending(task: Task, ops: Iterable[Op], evaluator: Evaluator) -> list[Op]:
    """Ops targeting task that the evaluator does not allow."""
    return partition_ops(task, ops, evaluator)[1]


def materialize_task(task: Task, ops: Iterable[Op], evaluator: Evaluator) -> MaterializedTask:
    """Fold the applied ops of task into its effective state."""
    applied, pending = partition_ops(task, ops, evaluator)

    seed = {
        "title": task.title,
        "description": task.description,
        "column_id": task.column_id,
        "position": base_position(task),
        "label_ids": task.label_ids,
    }
    state = {slot: _FieldState(seed[slot], task.created_at, task.did) for slot in MUTABLE_FIELDS}

    for op in applied:
        for slot in MUTABLE_FIELDS:
            if not op.fields.is_set(slot):
                continue
            if op.created_at > state[slot].timestamp:
                state[slot] = _FieldState(getattr(op.fields, slot), op.created_at, op.did)

    last_by = task.did
    last_at = task.updated_at or task.created_at
    for slot in MUTABLE_FIELDS:
        if state[slot].timestamp > last_at:
            last_at = state[slot].timestamp
            last_by = state[slot].author

    label_ids = state["label_ids"].value
    return MaterializedTask(
        uri=task.uri,
        did=task.did,
        rkey=task.rkey,
        board_uri=task.board_uri,
        title=task.title,
        description=task.description,
        column_id=task.column_id,
        position=task.position,
        order=task.order,
        label_ids=task.label_ids,
        created_at=task.created_at,
        updated_at=task.updated_at,
        owner_did=task.did,
        effective_title=state["title"].value,
        effective_description=state["description"].value,
        effective_column_id=state["column_id"].value,
        effective_position=state["position"].value,
        effective_label_ids=tuple(label_ids) if label_ids else (),
        last_modified_by=last_by,
        last_modified_at=last_at,
        applied_ops=tuple(applied),
        pending_ops=tuple(pending),
        proposed=evaluator.decide_create(task.did, task.column_id) is not Decision.ALLOW,
    )


def dedupe_tasks(tasks: Iterable[Task]) -> list[Task]:
    """One task per (did, rkey), keeping the first seen."""
    seen: dict[tuple[str, str], Task] = {}
    for task in tasks:
        seen.setdefault((task.did, task.rkey), task)
    return list(seen.values())


def materialize_board(
    board: Board,
    tasks: Iterable[Task],
    ops: Iterable[Op],
    trusts: Iterable[Trust],
    viewer: str | None = None,
) -> list[MaterializedTask]:
    """Materialize every task on board, sorted by effective position.

    Args:
        board: The board whose rules and owner gate ops
        tasks: Task records; duplicates and other boards' tasks are dropped
        ops: Op records for the board, in any order; ops of absent tasks are ignored
        trusts: Trust records for the board, from any author
        viewer: Principal whose own writes count as applied (local cache)
    """
    evaluator = Evaluator.for_board(board, trusts, viewer=viewer)

    ops_by_task: dict[str, list[Op]] = defaultdict(list)
    for op in ops:
        ops_by_task[op.target_task_uri].append(op)

    materialized = [
        materialize_task(task, ops_by_task.get(task.uri, ()), evaluator)
        for task in dedupe_tasks(tasks)
        if task.board_uri == board.uri
    ]
    return sort_tasks(materialized)


@dataclass(frozen=True)
class BoardView:
    """A board's raw records plus its materialized tasks."""

    records: BoardRecords
    tasks: tuple[MaterializedTask, ...]

    @property
    def board(self) -> Board:
        return self.records.board

    def task(self, uri: str) -> MaterializedTask | None:
        for task in self.tasks:
            if task.uri == uri:
                return task
        return None

    def column(self, column_id: str) -> list[MaterializedTask]:
        """Tasks whose effective column is column_id, in display order."""
        return [t for t in self.tasks if t.effective_column_id == column_id]

    def to_dict(self) -> dict[str, Any]:
        def with_key(record: Any) -> dict[str, Any]:
            return {"uri": record.uri, "did": record.did, "rkey": record.rkey, **record.to_record()}

        return {
            "board": with_key(self.records.board),
            "tasks": [t.to_dict() for t in self.tasks],
            "rawTasks": [with_key(t) for t in self.records.tasks],
            "rawOps": [with_key(o) for o in self.records.ops],
            "ops": [with_key(o) for o in self.records.ops],
            "trusts": [with_key(t) for t in self.records.trusts],
            "comments": [with_key(c) for c in self.records.comments],
            "approvals": [with_key(a) for a in self.records.approvals],
            "reactions": [with_key(r) for r in self.records.reactions],
        }


def build_board_view(records: BoardRecords, viewer: str | None = None) -> BoardView:
    tasks = materialize_board(
        records.board, records.tasks, records.ops, records.trusts, viewer=viewer
    )
    return BoardView(records=records, tasks=tuple(tasks))
