"""
Per-board change notification with coalescing.

Each subscription is a two-state machine:

    IDLE --notify--> NOTIFIED --next_change()--> IDLE

Notifying a subscription that is already NOTIFIED does nothing beyond
counting the coalesced signal: the consumer re-fetches the whole board,
so one pending signal covers any number of changes.

Invariants:
    - A subscription holds at most one undelivered signal
    - A notify that lands while the consumer is re-fetching is not lost:
      it moves the subscription back to NOTIFIED
    - Signals carry no payload beyond the board URI
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    IDLE = "idle"
    NOTIFIED = "notified"


class BoardSubscription:
    """One reader's interest in one board."""

    def __init__(self, board_uri: str, notifier: BoardNotifier) -> None:
        self.board_uri = board_uri
        self._notifier = notifier
        self._event = asyncio.Event()
        self.delivered = 0
        self.coalesced = 0
        self.closed = False

    @property
    def state(self) -> SubscriptionState:
        return SubscriptionState.NOTIFIED if self._event.is_set() else SubscriptionState.IDLE

    def _signal(self) -> None:
        if self._event.is_set():
            self.coalesced += 1
        else:
            self._event.set()

    async def next_change(self, timeout: float | None = None) -> str | None:
        """Wait for the board to change, then return to IDLE.

        Returns:
            The board URI, or None on timeout or after close()
        """
        if self.closed:
            return None
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if self.closed:
            return None
        self._event.clear()
        self.delivered += 1
        return self.board_uri

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._notifier.unsubscribe(self)
        self._event.set()

    def __enter__(self) -> BoardSubscription:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BoardNotifier:
    """Registry of board subscriptions.

    Example:
        >>> notifier = BoardNotifier()
        >>> sub = notifier.subscribe(board_uri)
        >>> notifier.notify(board_uri)
        >>> await sub.next_change()
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[BoardSubscription]] = defaultdict(set)

    def subscribe(self, board_uri: str) -> BoardSubscription:
        subscription = BoardSubscription(board_uri, self)
        self._subscriptions[board_uri].add(subscription)
        logger.debug(f"Subscribed to {board_uri}")
        return subscription

    def unsubscribe(self, subscription: BoardSubscription) -> None:
        subs = self._subscriptions.get(subscription.board_uri)
        if subs is None:
            return
        subs.discard(subscription)
        if not subs:
            del self._subscriptions[subscription.board_uri]

    def notify(self, board_uri: str) -> int:
        """Signal every subscription of board_uri.

        Returns:
            Number of subscriptions signalled
        """
        subs = self._subscriptions.get(board_uri)
        if not subs:
            return 0
        for subscription in list(subs):
            subscription._signal()
        return len(subs)

    def subscriber_count(self, board_uri: str | None = None) -> int:
        if board_uri is not None:
            return len(self._subscriptions.get(board_uri, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def watched_boards(self) -> list[str]:
        return sorted(self._subscriptions)
