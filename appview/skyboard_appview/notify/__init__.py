"""Board change notification."""

from .subscriptions import BoardNotifier, BoardSubscription, SubscriptionState

__all__ = ["BoardNotifier", "BoardSubscription", "SubscriptionState"]
