"""
Backoff retry for operations against the shared SQLite database.

The database is opened by one daemon and any number of short lived client
processes at the same time. SQLite serializes writers with a file lock, so
an operation can fail with "database is locked" whenever another process
holds it. Such failures clear within milliseconds, so the operation is
simply run again after a randomized sleep. The jitter keeps processes that
collided once from colliding again on every retry.

Invariants:
    - spin_sql never raises the operation's exception
    - max_attempts=None retries forever; a permanently broken database
      therefore blocks the caller (intended for production use)
    - With a finite max_attempts the default value is returned once the
      attempts are used up

How to change safely:
    - Keep the jitter; without it contending clients retry in lockstep
    - Only tests should pass a finite max_attempts
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Sleep policy between two attempts.

    Attributes:
        base_ms: Fixed part of the delay
        jitter_ms: Upper bound of the uniformly distributed extra delay
    """

    base_ms: float
    jitter_ms: float

    def delay(self) -> float:
        """Seconds to sleep before the next attempt."""
        return (self.base_ms + random.uniform(0, self.jitter_ms)) / 1000.0


# Single row writes (server rows, heartbeats).
WRITE_BACKOFF = Backoff(base_ms=100, jitter_ms=300)
# Opening the database and migrating its schema.
OPEN_BACKOFF = Backoff(base_ms=25, jitter_ms=50)
# Reads and prepared statements.
READ_BACKOFF = Backoff(base_ms=50, jitter_ms=100)


def spin_sql(
    operation: Callable[[], T],
    *,
    backoff: Backoff = READ_BACKOFF,
    max_attempts: int | None = None,
    default: T | None = None,
    description: str = "",
) -> T | None:
    """Run `operation` until it succeeds.

    Args:
        operation: Zero argument callable doing the database work
        backoff: Sleep policy between attempts
        max_attempts: Stop after this many failures; None never stops
        default: Returned when max_attempts is exhausted
        description: Name used in log records

    Returns:
        The operation's result, or `default` once attempts are exhausted
    """
    name = description or getattr(operation, "__name__", "operation")
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            attempt += 1
            logger.debug(f"{name} failed (attempt {attempt}): {e}")

        if max_attempts is not None and attempt >= max_attempts:
            logger.warning(
                f"{name} gave up after {attempt} attempts",
                extra={"operation": name, "attempts": attempt},
            )
            return default

        time.sleep(backoff.delay())
