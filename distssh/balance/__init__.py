"""
Balance module for distssh - choosing the host to run on.

The RemoteHostCache ranks the hosts of a cluster by their stored load and
spreads concurrent clients over the best few of them.
"""

from .host_cache import TOP_CANDIDATES, EmptyCacheError, RemoteHostCache

__all__ = [
    "TOP_CANDIDATES",
    "EmptyCacheError",
    "RemoteHostCache",
]
