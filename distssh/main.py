"""
distssh - Main entry point.

Commands:
    distssh localload            print the load of this machine
    distssh daemon [--db PATH]   run the background load updater
    distssh pick HOST [HOST...]  print the host(s) to use, best first

Usage:
    python -m distssh pick node1 node2 node3

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - localload prints nothing but the load, the probe parses its output
    - pick exits non-zero when no host of the cluster has a known load yet
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

import json_log_formatter

from . import __version__
from .balance import RemoteHostCache
from .config import Settings
from .daemon import Daemon
from .probe import print_local_load
from .store import CoordinationStore
from .types import Host

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure logging based on configuration.

    Logs go to stderr; stdout carries command output only.

    Args:
        settings: distssh configuration
    """
    level = getattr(logging, settings.log.level.upper(), logging.WARNING)

    if settings.log.format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="distssh",
        description="Pick the least loaded host of a cluster",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("localload", help="Print the load average of this machine")

    daemon = sub.add_parser("daemon", help="Run the background load updater")
    daemon.add_argument("--db", type=Path, default=None, help="Database file")

    pick = sub.add_parser("pick", help="Print the host(s) to use, best first")
    pick.add_argument("hosts", nargs="+", help="Hosts of the cluster")
    pick.add_argument("--db", type=Path, default=None, help="Database file")
    pick.add_argument(
        "-n", "--count", type=int, default=1, help="Number of hosts to print (default: 1)"
    )

    return parser


def run_daemon(db_path: Path | None, settings: Settings) -> int:
    with CoordinationStore.open(db_path, settings.store) as store:
        daemon = Daemon(store, settings)

        def handle_signal(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, shutting down")
            daemon.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        daemon.run()
    return 0


def run_pick(hosts: Sequence[str], db_path: Path | None, count: int, settings: Settings) -> int:
    cluster = [Host(h) for h in hosts]
    cache = RemoteHostCache.make(db_path, cluster, settings)
    if cache.is_empty():
        print("No host of the cluster is online yet, try again", file=sys.stderr)
        return 1

    for _ in range(max(count, 1)):
        if cache.is_empty():
            break
        print(cache.pop_best())
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run a distssh command.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
        settings.validate_settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(settings)
    settings.log_config()

    if args.command == "localload":
        return print_local_load()
    if args.command == "daemon":
        return run_daemon(args.db, settings)
    return run_pick(args.hosts, args.db, args.count, settings)


if __name__ == "__main__":
    sys.exit(main())
