"""
Position keys for manual task ordering.

Keys are base-62 fractional indexes: a variable-length integer part whose
head character encodes its length, followed by an optional fractional
part. Any two distinct keys have room for a key between them, so a move
writes one new key for the moved task and never renumbers its
neighbours. The encoding matches the ``fractional-indexing`` package
used by browser clients, so keys written by either side interleave.

Invariants:
    - generate_key_between(a, b) returns k with a < k < b
    - Keys never end in the zero digit
    - Ordering is plain string comparison

How to change safely:
    - Never change DIGITS or the head-length encoding; stored keys depend
      on both
"""

from __future__ import annotations

from typing import Any, Iterable

DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"

MAX_RANK = 10_000

_ZERO = DIGITS[0]
_SMALLEST_INTEGER = "A" + _ZERO * 26


def _midpoint(a: str, b: str | None) -> str:
    """Digits strictly between fractional parts a and b (b None = 1)."""
    if b is not None and a >= b:
        raise ValueError(f"{a} >= {b}")
    if a[-1:] == _ZERO or (b and b[-1:] == _ZERO):
        raise ValueError("trailing zero")
    if b:
        n = 0
        while n < len(b) and (a[n] if n < len(a) else _ZERO) == b[n]:
            n += 1
        if n > 0:
            return b[:n] + _midpoint(a[n:], b[n:])
    digit_a = DIGITS.index(a[0]) if a else 0
    digit_b = DIGITS.index(b[0]) if b is not None else len(DIGITS)
    if digit_b - digit_a > 1:
        return DIGITS[(digit_a + digit_b + 1) // 2]
    if b and len(b) > 1:
        return b[:1]
    return DIGITS[digit_a] + _midpoint(a[1:], None)


def _integer_length(head: str) -> int:
    if "a" <= head <= "z":
        return ord(head) - ord("a") + 2
    if "A" <= head <= "Z":
        return ord("Z") - ord(head) + 2
    raise ValueError(f"invalid order key head: {head}")


def _validate_integer(integer: str) -> None:
    if len(integer) != _integer_length(integer[0]):
        raise ValueError(f"invalid integer part of order key: {integer}")


def _integer_part(key: str) -> str:
    length = _integer_length(key[0])
    if length > len(key):
        raise ValueError(f"invalid order key: {key}")
    return key[:length]


def validate_key(key: str) -> None:
    """Raise ValueError unless key is a well-formed position key."""
    if not key:
        raise ValueError("empty order key")
    if key == _SMALLEST_INTEGER:
        raise ValueError(f"invalid order key: {key}")
    integer = _integer_part(key)
    if key[len(integer) :][-1:] == _ZERO:
        raise ValueError(f"invalid order key: {key}")


def is_valid_key(key: str | None) -> bool:
    if key is None:
        return False
    try:
        validate_key(key)
    except ValueError:
        return False
    return True


def _increment_integer(x: str) -> str | None:
    _validate_integer(x)
    head, digs = x[0], list(x[1:])
    carry = True
    i = len(digs) - 1
    while carry and i >= 0:
        d = DIGITS.index(digs[i]) + 1
        if d == len(DIGITS):
            digs[i] = _ZERO
        else:
            digs[i] = DIGITS[d]
            carry = False
        i -= 1
    if not carry:
        return head + "".join(digs)
    if head == "Z":
        return "a" + _ZERO
    if head == "z":
        return None
    new_head = chr(ord(head) + 1)
    if new_head > "a":
        digs.append(_ZERO)
    else:
        digs.pop()
    return new_head + "".join(digs)


def _decrement_integer(x: str) -> str | None:
    _validate_integer(x)
    head, digs = x[0], list(x[1:])
    borrow = True
    i = len(digs) - 1
    while borrow and i >= 0:
        d = DIGITS.index(digs[i]) - 1
        if d == -1:
            digs[i] = DIGITS[-1]
        else:
            digs[i] = DIGITS[d]
            borrow = False
        i -= 1
    if not borrow:
        return head + "".join(digs)
    if head == "a":
        return "Z" + DIGITS[-1]
    if head == "A":
        return None
    new_head = chr(ord(head) - 1)
    if new_head < "Z":
        digs.append(DIGITS[-1])
    else:
        digs.pop()
    return new_head + "".join(digs)


def generate_key_between(a: str | None, b: str | None) -> str:
    """Return a key sorting strictly between a and b.

    Either bound may be None, meaning unbounded on that side.

    Raises:
        ValueError: If a key is malformed or a >= b
    """
    if a is not None:
        validate_key(a)
    if b is not None:
        validate_key(b)
    if a is not None and b is not None and a >= b:
        raise ValueError(f"{a} >= {b}")

    if a is None:
        if b is None:
            return "a" + _ZERO
        ib = _integer_part(b)
        fb = b[len(ib) :]
        if ib == _SMALLEST_INTEGER:
            return ib + _midpoint("", fb)
        if ib < b:
            return ib
        res = _decrement_integer(ib)
        if res is None:
            raise ValueError("cannot decrement any more")
        return res

    if b is None:
        ia = _integer_part(a)
        fa = a[len(ia) :]
        res = _increment_integer(ia)
        return ia + _midpoint(fa, None) if res is None else res

    ia = _integer_part(a)
    fa = a[len(ia) :]
    ib = _integer_part(b)
    fb = b[len(ib) :]
    if ia == ib:
        return ia + _midpoint(fa, fb)
    res = _increment_integer(ia)
    if res is None:
        raise ValueError("cannot increment any more")
    if res < b:
        return res
    return ia + _midpoint(fa, None)


def generate_n_keys_between(a: str | None, b: str | None, n: int) -> list[str]:
    """Return n ascending keys between a and b."""
    if n <= 0:
        return []
    if n == 1:
        return [generate_key_between(a, b)]
    if b is None:
        key = generate_key_between(a, b)
        keys = [key]
        for _ in range(n - 1):
            key = generate_key_between(key, b)
            keys.append(key)
        return keys
    if a is None:
        key = generate_key_between(a, b)
        keys = [key]
        for _ in range(n - 1):
            key = generate_key_between(a, key)
            keys.append(key)
        keys.reverse()
        return keys
    mid = n // 2
    key = generate_key_between(a, b)
    return [
        *generate_n_keys_between(a, key, mid),
        key,
        *generate_n_keys_between(key, b, n - mid - 1),
    ]


def key_at_rank(order: int | None) -> str:
    """Position for a legacy integer order.

    Walks forward from the unbounded left anchor order + 1 times, so rank n
    sorts after every rank below it. order is clamped to 0..MAX_RANK.
    """
    if order is None:
        return generate_key_between(None, None)
    rank = max(0, min(int(order), MAX_RANK))
    key: str | None = None
    for _ in range(rank + 1):
        key = generate_key_between(key, None)
    assert key is not None
    return key


def position_between(before: str | None, after: str | None) -> str:
    """Key for a task dropped between two neighbours.

    Neighbour keys that are malformed or out of order (possible when they
    come from other writers) are dropped in favour of an open bound.
    """
    if not is_valid_key(before):
        before = None
    if not is_valid_key(after):
        after = None
    if before is not None and after is not None and before >= after:
        after = None
    return generate_key_between(before, after)


def task_sort_key(task: Any) -> tuple[str, str, str]:
    """Sort key for materialized tasks: position, then creation time, then URI."""
    return (task.effective_position or "", task.created_at, task.uri)


def sort_tasks(tasks: Iterable[Any]) -> list[Any]:
    return sorted(tasks, key=task_sort_key)
