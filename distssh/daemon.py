"""
Background updater that keeps the stored host loads fresh.

One daemon per database probes the host with the oldest measurement, stores
the result and beats its heartbeat, over and over. Clients look at the
heartbeat to decide whether a daemon is alive and spawn one otherwise. The
daemon exits by itself once no client has used the database for a while.

Invariants:
    - The stalest host is always probed next, so every host is refreshed
      about once per (number of hosts * update interval)
    - update_server() ignores hosts removed by a client mid-probe
    - The daemon beats after every cycle, also when there is nothing to probe

How to change safely:
    - heartbeat_timeout must stay well above update_interval + probe
      timeout, otherwise clients consider a busy daemon dead
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
from collections.abc import Callable
from datetime import timedelta

from .config import ProbeConfig, Settings
from .probe import measure
from .store import CoordinationStore
from .types import Host, HostLoad, Load

logger = logging.getLogger(__name__)

Probe = Callable[[Host, timedelta, ProbeConfig], Load]


def daemon_command(store: CoordinationStore) -> list[str]:
    """argv that starts a daemon for the database of `store`."""
    return [sys.executable, "-m", "distssh", "daemon", "--db", str(store.path)]


def daemon_is_alive(store: CoordinationStore, settings: Settings) -> bool:
    return store.get_daemon_beat() <= settings.daemon.heartbeat_timeout


def start_daemon(
    store: CoordinationStore,
    settings: Settings | None = None,
    spawn: Callable[[list[str]], object] | None = None,
) -> bool:
    """Start a daemon unless one is beating.

    A beat is written on behalf of the new daemon right away so clients
    starting at the same moment don't spawn another one.

    Args:
        store: Open coordination store
        settings: distssh configuration
        spawn: Starts the daemon process from an argv (tests)

    Returns:
        True if a daemon was started
    """
    settings = settings or Settings()
    if daemon_is_alive(store, settings):
        return False

    argv = daemon_command(store)
    try:
        (spawn or _spawn_detached)(argv)
    except OSError as e:
        logger.warning(f"Unable to start the distssh daemon: {e}")
        return False

    store.daemon_beat()
    logger.info("Started distssh daemon", extra={"db_path": str(store.path)})
    return True


def _spawn_detached(argv: list[str]) -> subprocess.Popen:
    return subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )


class Daemon:
    """The update loop.

    Example:
        >>> with CoordinationStore.open(path) as store:
        ...     Daemon(store).run()
    """

    def __init__(
        self,
        store: CoordinationStore,
        settings: Settings | None = None,
        probe: Probe = measure,
    ) -> None:
        """Initialize the daemon.

        Args:
            store: Open coordination store
            settings: distssh configuration
            probe: Measures one host (tests replace it)
        """
        self.store = store
        self.settings = settings or Settings()
        self._probe = probe
        self._stop = threading.Event()

    def stop(self) -> None:
        """Make run() return after the current cycle."""
        self._stop.set()

    @property
    def is_stopped(self) -> bool:
        return self._stop.is_set()

    def clients_gone(self) -> bool:
        """No client has used the database within the idle timeout."""
        return self.store.get_client_beat() > self.settings.daemon.idle_timeout

    def run_once(self) -> HostLoad | None:
        """Measure the stalest host and store the result.

        Returns:
            The stored measurement, None if there was no host to measure
        """
        host = self.store.get_server_to_update()
        if host is None:
            return None

        load = self._probe(host, self.settings.probe.timeout, self.settings.probe)
        host_load = HostLoad(host=host, load=load)
        self.store.update_server(host_load)
        logger.debug(
            "Updated load",
            extra={
                "host": host.address,
                "load_avg": load.load_avg,
                "access_time_ms": load.access_time_ms,
                "unknown": load.unknown,
            },
        )
        return host_load

    def run(self) -> int:
        """Update loads until stopped or until the clients are gone.

        Returns:
            Number of completed cycles
        """
        logger.info("distssh daemon running", extra={"db_path": str(self.store.path)})
        self.store.daemon_beat()

        cycles = 0
        interval = self.settings.daemon.update_interval.total_seconds()
        while not self._stop.is_set():
            if self.clients_gone():
                logger.info("No client activity, stopping the daemon")
                break

            self.run_once()
            self.store.daemon_beat()
            cycles += 1
            self._stop.wait(interval)

        logger.info("distssh daemon stopped", extra={"cycles": cycles})
        return cycles
