"""
Record validation for Skyboard collections.

Every record read from a repository or the firehose passes through here
before it reaches a store. Models mirror the wire schema shared with
browser clients and bound every string and list so a hostile record
cannot bloat the cache.

Invariants:
    - Invalid records are rejected whole, never partially stored
    - Unknown keys are ignored, including unknown op field keys
    - Op field maps keep exactly the keys that were present; an explicit
      null description survives validation

How to change safely:
    - Loosening a bound is safe; tightening one drops existing records on
      the next backfill
    - New record fields must be optional
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator

from .errors import ValidationError
from .uris import APPROVAL, BOARD, COMMENT, OP, REACTION, TASK, TRUST

logger = logging.getLogger(__name__)

MAX_STRING = 50_000
MAX_EMOJI = 32
MAX_COLUMNS = 100
MAX_LABELS = 200
MAX_LABEL_IDS = 200
MAX_ORDER = 10_000
MAX_RULES = 100

BoundedStr = Annotated[str, StringConstraints(max_length=MAX_STRING)]
Order = Annotated[StrictInt, Field(ge=0, le=MAX_ORDER)]
LabelIds = Annotated[list[BoundedStr], Field(max_length=MAX_LABEL_IDS)]


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ColumnModel(_WireModel):
    id: BoundedStr
    name: BoundedStr
    order: float


class LabelModel(_WireModel):
    id: BoundedStr
    name: BoundedStr
    color: BoundedStr
    description: BoundedStr | None = None


class PermissionRuleModel(_WireModel):
    operation: BoundedStr
    scope: Literal["author_only", "trusted", "anyone"]
    column_ids: Annotated[list[BoundedStr], Field(max_length=MAX_COLUMNS)] | None = Field(
        None, alias="columnIds"
    )


class PermissionsModel(_WireModel):
    rules: list[PermissionRuleModel] = Field(default_factory=list, max_length=MAX_RULES)


class BoardModel(_WireModel):
    name: BoundedStr
    description: BoundedStr | None = None
    columns: list[ColumnModel] = Field(..., max_length=MAX_COLUMNS)
    labels: Annotated[list[LabelModel], Field(max_length=MAX_LABELS)] | None = None
    permissions: PermissionsModel | None = None
    open: StrictBool | None = None
    created_at: BoundedStr = Field(..., alias="createdAt")


class TaskModel(_WireModel):
    title: BoundedStr
    description: BoundedStr | None = None
    column_id: BoundedStr = Field(..., alias="columnId")
    board_uri: BoundedStr = Field(..., alias="boardUri")
    position: BoundedStr | None = None
    label_ids: LabelIds | None = Field(None, alias="labelIds")
    order: Order | None = None
    created_at: BoundedStr = Field(..., alias="createdAt")
    updated_at: BoundedStr | None = Field(None, alias="updatedAt")


class OpFieldsModel(_WireModel):
    title: BoundedStr | None = None
    description: BoundedStr | None = None
    column_id: BoundedStr | None = Field(None, alias="columnId")
    position: BoundedStr | None = None
    label_ids: LabelIds | None = Field(None, alias="labelIds")
    order: Order | None = None

    @field_validator("title", "column_id", "position", "order", mode="before")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("must not be null")
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class OpModel(_WireModel):
    target_task_uri: BoundedStr = Field(..., alias="targetTaskUri")
    board_uri: BoundedStr = Field(..., alias="boardUri")
    fields: OpFieldsModel
    created_at: BoundedStr = Field(..., alias="createdAt")

    def to_wire(self) -> dict[str, Any]:
        return {
            "targetTaskUri": self.target_task_uri,
            "boardUri": self.board_uri,
            "fields": self.fields.to_wire(),
            "createdAt": self.created_at,
        }


class TrustModel(_WireModel):
    trusted_did: BoundedStr = Field(..., alias="trustedDid")
    board_uri: BoundedStr = Field(..., alias="boardUri")
    created_at: BoundedStr = Field(..., alias="createdAt")


class CommentModel(_WireModel):
    target_task_uri: BoundedStr = Field(..., alias="targetTaskUri")
    board_uri: BoundedStr = Field(..., alias="boardUri")
    text: BoundedStr
    created_at: BoundedStr = Field(..., alias="createdAt")


class ApprovalModel(_WireModel):
    target_uri: BoundedStr = Field(..., alias="targetUri")
    board_uri: BoundedStr = Field(..., alias="boardUri")
    created_at: BoundedStr = Field(..., alias="createdAt")


class ReactionModel(_WireModel):
    target_task_uri: BoundedStr = Field(..., alias="targetTaskUri")
    board_uri: BoundedStr = Field(..., alias="boardUri")
    emoji: Annotated[str, StringConstraints(max_length=MAX_EMOJI)]
    created_at: BoundedStr = Field(..., alias="createdAt")


RECORD_MODELS: dict[str, type[_WireModel]] = {
    BOARD: BoardModel,
    TASK: TaskModel,
    OP: OpModel,
    TRUST: TrustModel,
    COMMENT: CommentModel,
    APPROVAL: ApprovalModel,
    REACTION: ReactionModel,
}


def parse_record(collection: str, value: Any) -> dict[str, Any]:
    """Validate a record and return its normalized wire dict.

    Raises:
        ValidationError: If the collection is unknown or the record is invalid
    """
    model = RECORD_MODELS.get(collection)
    if model is None:
        raise ValidationError(f"Unknown collection: {collection}", collection=collection)
    try:
        parsed = model.model_validate(value)
    except PydanticValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError(
            f"Invalid {collection} record",
            collection=collection,
            errors=errors,
        ) from e
    return parsed.to_wire()


def validate_record(collection: str, value: Any) -> dict[str, Any] | None:
    """Validate a record, logging and returning None when it is invalid."""
    try:
        return parse_record(collection, value)
    except ValidationError as e:
        logger.warning(
            f"Discarding invalid record: {e.message}",
            extra={"collection": collection, "errors": e.errors},
        )
        return None
