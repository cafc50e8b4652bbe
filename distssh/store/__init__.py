"""
Store module for distssh - the database shared by the daemon and clients.

This module handles:
- Schema creation and forward-only migration
- Server load rows and the daemon/client heartbeats
- Retrying operations that lose against another process's lock

Invariants:
    - No public operation raises a storage error
    - Every write is a single row statement

How to change safely:
    - Test migrations by opening databases written by the previous version
    - Test contention with several processes, not threads
"""

from .coordination_store import SCHEMA_VERSION, CoordinationStore, StoreUnavailableError
from .retry import Backoff, spin_sql

__all__ = [
    "SCHEMA_VERSION",
    "CoordinationStore",
    "StoreUnavailableError",
    "Backoff",
    "spin_sql",
]
