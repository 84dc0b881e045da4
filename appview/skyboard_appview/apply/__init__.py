"""
Write path of the Skyboard aggregator.

Components:
- AggregatorStore: SQLite store of every record, participants and cursor
- Ingester: Change stream consumer feeding the store
"""

from .aggregator_store import AggregatorStore
from .ingester import IngestError, IngestResult, Ingester

__all__ = ["AggregatorStore", "IngestError", "IngestResult", "Ingester"]
