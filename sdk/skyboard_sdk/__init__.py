"""
Skyboard SDK - shared board logic and local-first client.

This package provides:
- Record types and validation for the dev.skyboard.* collections
- Position keys for manual ordering (positions)
- Trust/permission evaluation (permissions.Evaluator)
- The materialization engine used by every read model
- LocalCache, SyncWorker and BoardClient for local-first writes

Example:
    >>> from sdk.skyboard_sdk import Evaluator, materialize_board
    >>> tasks = materialize_board(board, tasks, ops, trusts)
    >>> [t.effective_title for t in tasks]

Invariants:
    - Materialization is a pure function of its inputs
    - Both the aggregator and the local cache fold through
      materialize_board()

Version: 0.1.0
"""

__version__ = "0.1.0"

from .client import BoardClient
from .config import ClientSettings
from .errors import (
    IdentityResolutionError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RepoWriteError,
    SkyboardError,
    StoreBusyError,
    UpstreamError,
    ValidationError,
)
from .local_cache import LocalCache, SyncStatus
from .materialize import (
    BoardView,
    MaterializedTask,
    build_board_view,
    collect_pending,
    materialize_board,
    materialize_task,
)
from .permissions import Decision, Evaluator, OperationType, Scope
from .positions import generate_key_between, generate_n_keys_between, key_at_rank
from .records import UNSET, Board, Op, OpFields, Task, Trust
from .repo import IdentityResolver, RepoClient
from .store import RecordStore
from .sync import SyncWorker
from .validate import parse_record, validate_record

__all__ = [
    "BoardClient",
    "ClientSettings",
    "SkyboardError",
    "ValidationError",
    "NotFoundError",
    "UpstreamError",
    "IdentityResolutionError",
    "NetworkError",
    "RepoWriteError",
    "StoreBusyError",
    "PermissionDeniedError",
    "LocalCache",
    "SyncStatus",
    "BoardView",
    "MaterializedTask",
    "build_board_view",
    "collect_pending",
    "materialize_board",
    "materialize_task",
    "Decision",
    "Evaluator",
    "OperationType",
    "Scope",
    "generate_key_between",
    "generate_n_keys_between",
    "key_at_rank",
    "UNSET",
    "Board",
    "Op",
    "OpFields",
    "Task",
    "Trust",
    "IdentityResolver",
    "RepoClient",
    "RecordStore",
    "SyncWorker",
    "parse_record",
    "validate_record",
]
