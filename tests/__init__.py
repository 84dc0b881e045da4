"""
Skyboard Test Suite.

This package contains:
- unit/: Unit tests (pure modules, SQLite stores, in-memory stream)
- integration/: Integration tests (ingest, backfill, HTTP API, local cache
  vs aggregator equivalence)
- factories.py: Record builders shared by both
"""
