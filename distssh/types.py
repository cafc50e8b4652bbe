"""
Core value types shared by the store, the probe and the host cache.

Invariants:
    - Host equality and hashing are by address string only
    - Load has a total order: measured loads sort before unknown ones,
      then by load average, then by access time
    - HostLoad is a plain two-field record; nothing indexes it positionally

How to change safely:
    - Changing the Load ordering changes which host every client picks
    - Keep these types immutable; they are handed between components freely
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from datetime import timedelta


class DistsshError(Exception):
    """Base exception for distssh."""

    pass


@dataclass(frozen=True)
class Host:
    """A remote login target.

    Attributes:
        address: Anything ssh accepts as a destination (name, IP, user@name)
    """

    address: str

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True)
class Load:
    """Load of a host as seen by a probe.

    Attributes:
        load_avg: One minute load average reported by the host
        access_time: Wall time it took to log in and measure
        unknown: True when there is no real measurement (never probed or
            the probe failed)
    """

    load_avg: float
    access_time: timedelta = field(default=timedelta(0))
    unknown: bool = False

    @property
    def sort_key(self) -> tuple[bool, float, timedelta]:
        return (self.unknown, self.load_avg, self.access_time)

    def __lt__(self, other: Load) -> bool:
        if not isinstance(other, Load):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __le__(self, other: Load) -> bool:
        if not isinstance(other, Load):
            return NotImplemented
        return self.sort_key <= other.sort_key

    def __gt__(self, other: Load) -> bool:
        if not isinstance(other, Load):
            return NotImplemented
        return self.sort_key > other.sort_key

    def __ge__(self, other: Load) -> bool:
        if not isinstance(other, Load):
            return NotImplemented
        return self.sort_key >= other.sort_key

    @property
    def access_time_ms(self) -> int:
        return int(self.access_time / timedelta(milliseconds=1))

    @classmethod
    def failed(cls) -> Load:
        """The load reported for a host that could not be measured.

        Ranks after every real measurement and is flagged unknown so the
        host is never treated as fast.
        """
        return cls(load_avg=sys.float_info.max, access_time=timedelta(hours=1), unknown=True)


@dataclass(frozen=True)
class HostLoad:
    """A host together with its last known load."""

    host: Host
    load: Load


@dataclass
class ServerLoads:
    """Servers read from the store, split by the requested cluster.

    Attributes:
        online: Hosts that are part of the requested cluster, with load
        unused: Hosts in the store that are not part of the cluster
    """

    online: list[HostLoad] = field(default_factory=list)
    unused: list[Host] = field(default_factory=list)
