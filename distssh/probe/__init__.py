"""
Probe module for distssh - measuring the load of hosts.

This module handles:
- Running `distssh localload` on a remote host over ssh with a hard timeout
- Reporting the local load on the remote side

Invariants:
    - A probe never blocks longer than its timeout plus one poll interval
    - A failed probe is reported as Load.failed(), never as an exception
"""

from .localload import local_load, print_local_load
from .metric import ExitStatus, ProbeError, measure

__all__ = [
    "local_load",
    "print_local_load",
    "ExitStatus",
    "ProbeError",
    "measure",
]
