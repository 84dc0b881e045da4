"""Repository backfill for the aggregator."""

from .backfiller import Backfiller, ReconcileResult

__all__ = ["Backfiller", "ReconcileResult"]
