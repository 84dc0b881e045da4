"""
Record identifiers: collection NSIDs, AT-URIs and TID record keys.

Every record is addressed by (did, collection, rkey) and referenced by
the URI ``at://{did}/{collection}/{rkey}``.

Invariants:
    - Collection NSIDs are wire identifiers shared with browser clients
    - TIDs generated in one process are strictly increasing
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

BOARD = "dev.skyboard.board"
TASK = "dev.skyboard.task"
OP = "dev.skyboard.op"
TRUST = "dev.skyboard.trust"
COMMENT = "dev.skyboard.comment"
APPROVAL = "dev.skyboard.approval"
REACTION = "dev.skyboard.reaction"

ALL_COLLECTIONS: tuple[str, ...] = (BOARD, TASK, OP, TRUST, COMMENT, APPROVAL, REACTION)

# Collections whose records point at a board
BOARD_SCOPED: tuple[str, ...] = (TASK, OP, TRUST, COMMENT, APPROVAL, REACTION)

_TID_ALPHABET = "234567abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class RecordKey:
    """Parsed AT-URI."""

    did: str
    collection: str
    rkey: str

    @property
    def uri(self) -> str:
        return build_uri(self.did, self.collection, self.rkey)


def build_uri(did: str, collection: str, rkey: str) -> str:
    return f"at://{did}/{collection}/{rkey}"


def parse_uri(uri: str) -> RecordKey | None:
    """Split an AT-URI into its parts, or None if it is not a record URI."""
    if not uri or not uri.startswith("at://"):
        return None
    parts = uri[len("at://") :].split("/")
    if len(parts) != 3 or not all(parts):
        return None
    return RecordKey(did=parts[0], collection=parts[1], rkey=parts[2])


def _encode_base32(value: int, width: int) -> str:
    chars = []
    for _ in range(width):
        chars.append(_TID_ALPHABET[value & 31])
        value >>= 5
    return "".join(reversed(chars))


class _TidClock:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0
        self._clock_id = int(time.time_ns()) & 1023

    def next(self) -> str:
        with self._lock:
            now = time.time_ns() // 1000
            if now <= self._last:
                now = self._last + 1
            self._last = now
            return _encode_base32((now << 10) | self._clock_id, 13)


_clock = _TidClock()


def generate_tid() -> str:
    """Return a new 13-character timestamp identifier for a record key."""
    return _clock.next()
