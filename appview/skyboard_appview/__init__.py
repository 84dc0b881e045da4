"""
Skyboard AppView - aggregated read model for collaborative kanban boards.

The aggregator follows the public change stream for every dev.skyboard.*
collection, keeps one SQLite store of every record it has seen, and folds
boards into their current state on read:

    Change stream (Jetstream) ──▶ Ingester ──▶ AggregatorStore (SQLite)
                                     │                 │
                                     ▼                 ▼
                               BoardNotifier     materialize_board()
                                     │                 │
                                     ▼                 ▼
                              WebSocket /ws     GET /board/{did}/{rkey}

Invariants:
    - Personal repositories are the source of truth; the store is a
      derived view that can be rebuilt by backfill
    - Materialized state is never persisted
    - Materialization is shared with the local-first client

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
