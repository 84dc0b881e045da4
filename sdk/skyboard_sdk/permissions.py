"""
Permission and trust evaluation for board actions.

The Evaluator is built once per board pass from the board owner, the set
of principals the owner trusts on that board, and the board's permission
rules. Every decision point in materialization receives the same
Evaluator; nothing here reads global state.

Decision order for an edit:
    1. Unknown operation type -> PENDING
    2. Board owner, task author or the local viewer -> ALLOW
    3. Broadest matching rule scope: anyone -> ALLOW,
       trusted -> ALLOW if trusted else PENDING, author_only -> DENY
    4. No matching rule -> ALLOW if trusted else PENDING

Invariants:
    - Trust is not transitive: only trust records authored by the board
      owner for that board count
    - Revocation is absence of the trust record
    - Decisions are pure functions of the Evaluator and the arguments

How to change safely:
    - Adding an operation type means adding it to OperationType and to
      DEFAULT_RULES
    - Keep field_operation() aligned with browser clients so both sides
      apply the same ops
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from .records import Board, OpFields, PermissionRule, Trust


class Decision(str, Enum):
    ALLOW = "allow"
    PENDING = "pending"
    DENY = "deny"


class OperationType(str, Enum):
    CREATE_TASK = "create_task"
    EDIT_TITLE = "edit_title"
    EDIT_DESCRIPTION = "edit_description"
    MOVE_TASK = "move_task"
    REORDER = "reorder"


class Scope(str, Enum):
    AUTHOR_ONLY = "author_only"
    TRUSTED = "trusted"
    ANYONE = "anyone"


_SCOPE_RANK = {Scope.AUTHOR_ONLY: 0, Scope.TRUSTED: 1, Scope.ANYONE: 2}

_OPERATIONS = {op.value for op in OperationType}

DEFAULT_RULES: tuple[PermissionRule, ...] = tuple(
    PermissionRule(operation=op.value, scope=Scope.TRUSTED.value) for op in OperationType
)


def field_operation(slot: str, fields: OpFields) -> str:
    """Operation type an op needs in order to set one field slot."""
    if slot == "title":
        return OperationType.EDIT_TITLE.value
    if slot == "description":
        return OperationType.EDIT_DESCRIPTION.value
    if slot == "column_id":
        return OperationType.MOVE_TASK.value
    if slot in ("position", "order"):
        if fields.is_set("column_id"):
            return OperationType.MOVE_TASK.value
        return OperationType.REORDER.value
    # labels share the title gate
    return OperationType.EDIT_TITLE.value


def owner_trusted_dids(board: Board, trusts: Iterable[Trust]) -> frozenset[str]:
    """Principals the board owner has trusted on this board."""
    return frozenset(
        t.trusted_did for t in trusts if t.did == board.did and t.board_uri == board.uri
    )


@dataclass(frozen=True)
class Evaluator:
    """Pure decision function over one board's trust graph and rules.

    Attributes:
        owner_did: Board owner
        trusted: Principals trusted by the owner on this board
        rules: Board permission rules (DEFAULT_RULES when the board has none)
        open: Whether the board accepts proposals from anyone
        viewer: Principal whose own writes count as applied (local view)
    """

    owner_did: str
    trusted: frozenset[str] = field(default_factory=frozenset)
    rules: tuple[PermissionRule, ...] = DEFAULT_RULES
    open: bool = False
    viewer: str | None = None

    @classmethod
    def for_board(
        cls,
        board: Board,
        trusts: Iterable[Trust],
        viewer: str | None = None,
    ) -> Evaluator:
        return cls(
            owner_did=board.did,
            trusted=owner_trusted_dids(board, trusts),
            rules=board.rules if board.rules else DEFAULT_RULES,
            open=board.open,
            viewer=viewer,
        )

    def is_trusted(self, actor: str) -> bool:
        return actor in self.trusted

    def is_privileged(self, actor: str, task_author: str | None = None) -> bool:
        """Owner, task author, local viewer or trusted principal."""
        return (
            actor == self.owner_did
            or actor == task_author
            or (self.viewer is not None and actor == self.viewer)
            or actor in self.trusted
        )

    def effective_scope(self, operation: str, column_id: str | None = None) -> Scope | None:
        """Broadest scope among rules matching operation and column."""
        broadest: Scope | None = None
        for rule in self.rules:
            if rule.operation != operation:
                continue
            if rule.column_ids and (column_id is None or column_id not in rule.column_ids):
                continue
            try:
                scope = Scope(rule.scope)
            except ValueError:
                continue
            if broadest is None or _SCOPE_RANK[scope] > _SCOPE_RANK[broadest]:
                broadest = scope
        return broadest

    def _by_scope(self, actor: str, operation: str, column_id: str | None) -> Decision:
        scope = self.effective_scope(operation, column_id)
        if scope is Scope.ANYONE:
            return Decision.ALLOW
        if scope is Scope.AUTHOR_ONLY:
            return Decision.DENY
        return Decision.ALLOW if self.is_trusted(actor) else Decision.PENDING

    def decide(
        self,
        actor: str,
        operation: str,
        task_author: str | None,
        column_id: str | None = None,
    ) -> Decision:
        """Decide whether actor may perform operation on a task."""
        if operation not in _OPERATIONS:
            return Decision.PENDING
        if actor == self.owner_did or actor == task_author:
            return Decision.ALLOW
        if self.viewer is not None and actor == self.viewer:
            return Decision.ALLOW
        return self._by_scope(actor, operation, column_id)

    def decide_create(self, actor: str, column_id: str | None = None) -> Decision:
        """Decide whether a task created by actor is part of the board."""
        if actor == self.owner_did:
            return Decision.ALLOW
        if self.viewer is not None and actor == self.viewer:
            return Decision.ALLOW
        decision = self._by_scope(actor, OperationType.CREATE_TASK.value, column_id)
        if decision is Decision.ALLOW:
            return decision
        return Decision.PENDING if self.open else Decision.DENY

    def decide_op_fields(
        self,
        actor: str,
        fields: OpFields,
        task_author: str | None,
        task_column_id: str | None,
    ) -> Decision:
        """Combined decision for every field an op touches.

        The most restrictive per-field decision wins. An op touching no
        field is allowed only for privileged actors.
        """
        touched = fields.touched()
        if not touched:
            if self.is_privileged(actor, task_author):
                return Decision.ALLOW
            return Decision.PENDING
        result = Decision.ALLOW
        for slot in touched:
            operation = field_operation(slot, fields)
            column = fields.column_id if slot == "column_id" else task_column_id
            decision = self.decide(actor, operation, task_author, column)
            if decision is Decision.DENY:
                return decision
            if decision is Decision.PENDING:
                result = decision
        return result
