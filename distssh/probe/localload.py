"""Remote side of the load probe: report the load of this machine."""

from __future__ import annotations

import os
import sys
from typing import TextIO


def local_load() -> float:
    """One minute load average of this machine."""
    return os.getloadavg()[0]


def print_local_load(out: TextIO = sys.stdout) -> int:
    """Print the load as the only line of output.

    Returns:
        Process exit code
    """
    print(local_load(), file=out)
    return 0
