"""Shared fixtures for distssh tests."""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from distssh.config import StoreConfig
from distssh.store import CoordinationStore


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(data_dir):
    return data_dir / "distssh.sqlite3"


@pytest.fixture
def store_config():
    """Store config that does not wait long for a daemon."""
    return StoreConfig(wait_for_servers=timedelta(milliseconds=200))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db_path, store_config, clock):
    """Open a fresh coordination store."""
    with CoordinationStore.open(db_path, store_config, clock=clock) as store:
        yield store
