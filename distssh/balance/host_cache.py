"""
Ranking of the hosts of a cluster by load, and the choice of where to go.

A RemoteHostCache is a snapshot: it is built once per invocation from the
coordination store and consumed by popping hosts until one accepts the
connection. It is never refreshed or shared.

Invariants:
    - Entries are stable-sorted by Load (measured before unknown, then by
      load average and access time)
    - A popped host never comes back; an empty cache stays empty

How to change safely:
    - pop_best() spreads clients over the three best hosts; always picking
      the best one makes every concurrent client land on the same host
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from pathlib import Path

from ..config import Settings
from ..daemon import start_daemon
from ..store import CoordinationStore
from ..types import DistsshError, Host, HostLoad

logger = logging.getLogger(__name__)

# Number of best hosts pop_best() chooses among.
TOP_CANDIDATES = 3


class EmptyCacheError(DistsshError, AssertionError):
    """A host was requested from an empty cache."""

    pass


class RemoteHostCache:
    """Hosts of a cluster ordered from least to most loaded.

    Example:
        >>> cache = RemoteHostCache.make("/tmp/distssh.sqlite3", cluster)
        >>> while not cache.is_empty():
        ...     host = cache.pop_best()
        ...     if try_connect(host):
        ...         break
    """

    def __init__(self, host_loads: Iterable[HostLoad] = (), rng: random.Random | None = None) -> None:
        """Build the cache.

        Args:
            host_loads: Hosts with their last known load, in any order
            rng: Random source used by pop_best()
        """
        self._by_load: list[HostLoad] = sorted(host_loads, key=lambda hl: hl.load.sort_key)
        self._rng = rng or random.Random()

    @classmethod
    def make(
        cls,
        db_path: str | Path | None,
        cluster: list[Host],
        settings: Settings | None = None,
    ) -> RemoteHostCache:
        """Build a cache for `cluster` from the coordination store.

        Registers new hosts of the cluster, makes sure a daemon keeps the
        loads fresh and forgets hosts that are not part of the cluster.

        Args:
            db_path: Database file (None uses the configured path)
            cluster: Hosts the caller wants to choose from
            settings: distssh configuration

        Returns:
            The cache; empty if no load of the cluster could be read
        """
        settings = settings or Settings()
        try:
            with CoordinationStore.open(db_path, settings.store) as store:
                store.client_beat()
                start_daemon(store, settings)
                store.sync_cluster(cluster)
                servers = store.get_server_loads(cluster)
                store.remove_unused_servers(servers.unused)
                return cls(servers.online)
        except Exception as e:
            logger.error(f"Unable to read the load of the cluster: {e}", exc_info=True)
        return cls()

    def _require_hosts(self) -> None:
        if not self._by_load:
            raise EmptyCacheError("no hosts left in the cache")

    def front(self) -> Host:
        """The least loaded host."""
        self._require_hosts()
        return self._by_load[0].host

    def pop_front(self) -> None:
        """Drop the least loaded host."""
        self._require_hosts()
        del self._by_load[0]

    def is_empty(self) -> bool:
        return not self._by_load

    def __len__(self) -> int:
        return len(self._by_load)

    def __bool__(self) -> bool:
        return not self.is_empty()

    def host_loads(self) -> list[HostLoad]:
        """The remaining entries, least loaded first."""
        return list(self._by_load)

    def pop_best(self) -> Host:
        """Pick a host to use and remove it from the cache.

        Only measured hosts are considered. With three or more of them one of
        the three least loaded is picked at random; with fewer the least
        loaded is picked. Without any measured host the overall front is used.
        """
        self._require_hosts()

        measured = [hl for hl in self._by_load if not hl.load.unknown]
        if not measured:
            picked = self._by_load[0].host
        elif len(measured) < TOP_CANDIDATES:
            picked = measured[0].host
        else:
            picked = self._rng.choice(measured[:TOP_CANDIDATES]).host

        self._by_load = [hl for hl in self._by_load if hl.host != picked]
        return picked
