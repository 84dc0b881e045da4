"""
Typed Skyboard records.

Records arrive as validated wire dicts (camelCase keys, see validate.py)
and are turned into frozen dataclasses here. The materialization engine
only ever sees these types.

Invariants:
    - Records are immutable once keyed by (did, collection, rkey)
    - OpFields distinguishes an absent field (UNSET) from an explicit
      None; both the fold and the evaluator rely on that distinction
    - to_record() emits only keys that carry a value, so a record read
      back through validate_record() compares equal

How to change safely:
    - New op fields need a slot in OpFields, an entry in OP_FIELD_KEYS and
      an operation mapping in permissions.field_operation()
    - Keep wire key names stable; browser clients read the same records
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .uris import build_uri, BOARD, TASK, OP, TRUST, COMMENT, APPROVAL, REACTION


class _Unset:
    """Marker for an op field that the op does not touch."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

# Op field slot -> wire key
OP_FIELD_KEYS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "column_id": "columnId",
    "position": "position",
    "label_ids": "labelIds",
    "order": "order",
}

# Fields folded by last-writer-wins, in fold order
MUTABLE_FIELDS: tuple[str, ...] = ("title", "description", "column_id", "position", "label_ids")


@dataclass(frozen=True)
class Column:
    id: str
    name: str
    order: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Column:
        return cls(id=data["id"], name=data["name"], order=data["order"])

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "order": self.order}


@dataclass(frozen=True)
class Label:
    id: str
    name: str
    color: str
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Label:
        return cls(
            id=data["id"],
            name=data["name"],
            color=data["color"],
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "name": self.name, "color": self.color}
        if self.description is not None:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class PermissionRule:
    operation: str
    scope: str
    column_ids: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRule:
        return cls(
            operation=data["operation"],
            scope=data["scope"],
            column_ids=tuple(data.get("columnIds") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"operation": self.operation, "scope": self.scope}
        if self.column_ids:
            out["columnIds"] = list(self.column_ids)
        return out


def infer_open(value: dict[str, Any]) -> bool:
    """Board openness: explicit flag, else any rule scoped to anyone."""
    if value.get("open") is not None:
        return bool(value["open"])
    rules = (value.get("permissions") or {}).get("rules") or []
    return any(rule.get("scope") == "anyone" for rule in rules)


@dataclass(frozen=True)
class Board:
    uri: str
    did: str
    rkey: str
    name: str
    created_at: str
    description: str | None = None
    columns: tuple[Column, ...] = ()
    labels: tuple[Label, ...] = ()
    rules: tuple[PermissionRule, ...] | None = None
    open: bool = False

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Board:
        permissions = value.get("permissions")
        rules = None
        if permissions is not None:
            rules = tuple(PermissionRule.from_dict(r) for r in permissions.get("rules") or ())
        return cls(
            uri=build_uri(did, BOARD, rkey),
            did=did,
            rkey=rkey,
            name=value["name"],
            description=value.get("description"),
            columns=tuple(Column.from_dict(c) for c in value.get("columns") or ()),
            labels=tuple(Label.from_dict(lbl) for lbl in value.get("labels") or ()),
            rules=rules,
            open=infer_open(value),
            created_at=value["createdAt"],
        )

    def to_record(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "open": self.open,
            "createdAt": self.created_at,
        }
        if self.description is not None:
            out["description"] = self.description
        if self.labels:
            out["labels"] = [lbl.to_dict() for lbl in self.labels]
        if self.rules is not None:
            out["permissions"] = {"rules": [r.to_dict() for r in self.rules]}
        return out


@dataclass(frozen=True)
class Task:
    uri: str
    did: str
    rkey: str
    board_uri: str
    title: str
    column_id: str
    created_at: str
    description: str | None = None
    position: str | None = None
    order: int | None = None
    label_ids: tuple[str, ...] | None = None
    updated_at: str | None = None

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Task:
        label_ids = value.get("labelIds")
        return cls(
            uri=build_uri(did, TASK, rkey),
            did=did,
            rkey=rkey,
            board_uri=value["boardUri"],
            title=value["title"],
            description=value.get("description"),
            column_id=value["columnId"],
            position=value.get("position"),
            order=value.get("order"),
            label_ids=tuple(label_ids) if label_ids is not None else None,
            created_at=value["createdAt"],
            updated_at=value.get("updatedAt"),
        )

    def to_record(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "title": self.title,
            "columnId": self.column_id,
            "boardUri": self.board_uri,
            "createdAt": self.created_at,
        }
        optional = {
            "description": self.description,
            "position": self.position,
            "order": self.order,
            "labelIds": list(self.label_ids) if self.label_ids is not None else None,
            "updatedAt": self.updated_at,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


@dataclass(frozen=True)
class OpFields:
    """Sparse field map of an op; untouched slots hold UNSET."""

    title: Any = UNSET
    description: Any = UNSET
    column_id: Any = UNSET
    position: Any = UNSET
    label_ids: Any = UNSET
    order: Any = UNSET

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OpFields:
        """Build from a wire field map. Unknown keys are ignored."""
        kwargs: dict[str, Any] = {}
        for slot, key in OP_FIELD_KEYS.items():
            if key in data:
                value = data[key]
                if slot == "label_ids" and value is not None:
                    value = tuple(value)
                kwargs[slot] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for slot, key in OP_FIELD_KEYS.items():
            value = getattr(self, slot)
            if value is UNSET:
                continue
            if slot == "label_ids" and value is not None:
                value = list(value)
            out[key] = value
        return out

    def touched(self) -> list[str]:
        """Slots this op sets, in declaration order."""
        return [slot for slot in OP_FIELD_KEYS if getattr(self, slot) is not UNSET]

    def is_set(self, slot: str) -> bool:
        return getattr(self, slot) is not UNSET


@dataclass(frozen=True)
class Op:
    uri: str
    did: str
    rkey: str
    target_task_uri: str
    board_uri: str
    fields: OpFields
    created_at: str

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Op:
        return cls(
            uri=build_uri(did, OP, rkey),
            did=did,
            rkey=rkey,
            target_task_uri=value["targetTaskUri"],
            board_uri=value["boardUri"],
            fields=OpFields.from_dict(value.get("fields") or {}),
            created_at=value["createdAt"],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "targetTaskUri": self.target_task_uri,
            "boardUri": self.board_uri,
            "fields": self.fields.to_dict(),
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Trust:
    uri: str
    did: str
    rkey: str
    trusted_did: str
    board_uri: str
    created_at: str

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Trust:
        return cls(
            uri=build_uri(did, TRUST, rkey),
            did=did,
            rkey=rkey,
            trusted_did=value["trustedDid"],
            board_uri=value["boardUri"],
            created_at=value["createdAt"],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "trustedDid": self.trusted_did,
            "boardUri": self.board_uri,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Comment:
    uri: str
    did: str
    rkey: str
    target_task_uri: str
    board_uri: str
    text: str
    created_at: str

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Comment:
        return cls(
            uri=build_uri(did, COMMENT, rkey),
            did=did,
            rkey=rkey,
            target_task_uri=value["targetTaskUri"],
            board_uri=value["boardUri"],
            text=value["text"],
            created_at=value["createdAt"],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "targetTaskUri": self.target_task_uri,
            "boardUri": self.board_uri,
            "text": self.text,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Approval:
    uri: str
    did: str
    rkey: str
    target_uri: str
    board_uri: str
    created_at: str

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Approval:
        return cls(
            uri=build_uri(did, APPROVAL, rkey),
            did=did,
            rkey=rkey,
            target_uri=value["targetUri"],
            board_uri=value["boardUri"],
            created_at=value["createdAt"],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "targetUri": self.target_uri,
            "boardUri": self.board_uri,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Reaction:
    uri: str
    did: str
    rkey: str
    target_task_uri: str
    board_uri: str
    emoji: str
    created_at: str

    @classmethod
    def from_record(cls, did: str, rkey: str, value: dict[str, Any]) -> Reaction:
        return cls(
            uri=build_uri(did, REACTION, rkey),
            did=did,
            rkey=rkey,
            target_task_uri=value["targetTaskUri"],
            board_uri=value["boardUri"],
            emoji=value["emoji"],
            created_at=value["createdAt"],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "targetTaskUri": self.target_task_uri,
            "boardUri": self.board_uri,
            "emoji": self.emoji,
            "createdAt": self.created_at,
        }


RECORD_TYPES: dict[str, type] = {
    BOARD: Board,
    TASK: Task,
    OP: Op,
    TRUST: Trust,
    COMMENT: Comment,
    APPROVAL: Approval,
    REACTION: Reaction,
}


def record_from_wire(collection: str, did: str, rkey: str, value: dict[str, Any]) -> Any:
    """Build the typed record for a collection from a validated wire dict."""
    return RECORD_TYPES[collection].from_record(did, rkey, value)


@dataclass(frozen=True)
class BoardRecords:
    """Everything stored for one board, as typed records."""

    board: Board
    tasks: list[Task] = field(default_factory=list)
    ops: list[Op] = field(default_factory=list)
    trusts: list[Trust] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    approvals: list[Approval] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)
