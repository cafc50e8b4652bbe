"""
distssh - run on the least loaded host of a cluster.

This package keeps a shared, eventually consistent view of the load of every
host in a cluster and picks a host for an interactive session:

    ┌──────────┐  sync / read / prune   ┌─────────────────────┐
    │  client  │───────────────────────▶│  SQLite database    │
    │  (pick)  │◀───────────────────────│  servers, beats     │
    └──────────┘   RemoteHostCache      └──────────┬──────────┘
         │ spawns if heartbeat is stale            │ stalest host
         ▼                                         ▼
    ┌──────────┐      ssh host localload     ┌───────────┐
    │  daemon  │────────────────────────────▶│  remote   │
    └──────────┘◀────────────────────────────│  host     │
                       load average          └───────────┘

Invariants:
    - The database is the only state shared between processes
    - No store or probe operation raises; failures become sentinel values
    - A host that was never measured, or failed its probe, ranks last

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
