"""
Coordination store shared by the distssh daemon and its clients.

One SQLite file holds the last known load of every host in the cluster and
two heartbeats. The daemon writes measurements and its own heartbeat; the
clients read the measurements, register the hosts of the cluster they are
using and write the client heartbeat. Nothing else coordinates the
processes: every statement is a single row upsert or delete, and lock
conflicts are absorbed by the backoff loop in retry.py.

Invariants:
    - Exactly one servers row per address (address is the primary key)
    - The schema version only moves forward; an older or missing version
      drops and recreates every table in one transaction, discarding the
      stored measurements
    - Public methods never raise storage errors; they return sentinels
      (empty lists, timedelta.max, None) instead

How to change safely:
    - Bump SCHEMA_VERSION whenever SCHEMA changes
    - Keep every write a single statement to keep lock hold times short

Table schema:
    schema_version:
        - version INTEGER
    servers:
        - address TEXT PRIMARY KEY
        - last_update INTEGER (Unix ms)
        - access_time INTEGER (ms)
        - load_avg REAL
        - unknown INTEGER (0/1)
    daemon_beat / client_beat:
        - id INTEGER PRIMARY KEY (always 0)
        - beat INTEGER (Unix ms)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from datetime import timedelta
from pathlib import Path

from ..config import StoreConfig
from ..types import DistsshError, Host, HostLoad, Load, ServerLoads
from .retry import OPEN_BACKOFF, READ_BACKOFF, WRITE_BACKOFF, Backoff, spin_sql

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

TABLES = ("schema_version", "servers", "daemon_beat", "client_beat")

SCHEMA = (
    "CREATE TABLE schema_version (version INTEGER NOT NULL)",
    """
    CREATE TABLE servers (
        address TEXT PRIMARY KEY,
        last_update INTEGER NOT NULL,
        access_time INTEGER NOT NULL,
        load_avg REAL NOT NULL,
        unknown INTEGER NOT NULL
    )
    """,
    "CREATE TABLE daemon_beat (id INTEGER PRIMARY KEY, beat INTEGER NOT NULL)",
    "CREATE TABLE client_beat (id INTEGER PRIMARY KEY, beat INTEGER NOT NULL)",
)

# Placeholder for hosts that were never measured: ranked last by load but
# the most overdue for a probe.
UNMEASURED_ACCESS_TIME_MS = 60_000
UNMEASURED_LOAD_AVG = 9999.0
UNMEASURED_AGE = timedelta(hours=1)

BEAT_ID = 0

# Primary result codes of lock contention.
SQLITE_BUSY = 5
SQLITE_LOCKED = 6


class StoreUnavailableError(DistsshError):
    """The database could not be opened within the configured attempts."""

    pass


def _ms(delta: timedelta) -> int:
    return int(delta / timedelta(milliseconds=1))


class CoordinationStore:
    """Typed access to the shared distssh database.

    Use `CoordinationStore.open()` to get an instance; it creates and
    migrates the database as needed.

    Example:
        >>> with CoordinationStore.open("/tmp/distssh.sqlite3") as store:
        ...     store.sync_cluster([Host("a"), Host("b")])
        ...     loads = store.get_server_loads([Host("a"), Host("b")])
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        path: Path,
        config: StoreConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Wrap an open, migrated connection.

        Args:
            conn: Connection in autocommit mode
            path: Database file
            config: Store configuration
            clock: Source of wall clock time in seconds
        """
        self._conn = conn
        self.path = path
        self.config = config
        self._clock = clock

    @classmethod
    def open(
        cls,
        path: str | Path | None = None,
        config: StoreConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> CoordinationStore:
        """Open the database at `path`, creating and migrating it if needed.

        Retries until it succeeds.

        Args:
            path: Database file (defaults to the configured path)
            config: Store configuration
            clock: Source of wall clock time in seconds

        Returns:
            A store ready for use

        Raises:
            StoreUnavailableError: Only when config.max_attempts is set and
                every attempt failed
        """
        config = config or StoreConfig()
        db_path = Path(path).expanduser() if path is not None else config.resolved_db_path

        conn = spin_sql(
            lambda: cls._connect(db_path, config),
            backoff=OPEN_BACKOFF,
            max_attempts=config.max_attempts,
            description=f"open {db_path}",
        )
        if conn is None:
            raise StoreUnavailableError(f"Unable to open database: {db_path}")
        return cls(conn, db_path, config, clock)

    @staticmethod
    def _connect(db_path: Path, config: StoreConfig) -> sqlite3.Connection:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(db_path),
            timeout=config.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit, explicit transaction for migration
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {config.busy_timeout_ms}")
            conn.execute("PRAGMA synchronous = NORMAL")
            if _schema_version(conn) < SCHEMA_VERSION:
                _migrate(conn)
        except Exception:
            conn.close()
            raise
        return conn

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> CoordinationStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _spin(self, operation, backoff: Backoff, default=None, description: str = ""):
        return spin_sql(
            operation,
            backoff=backoff,
            max_attempts=self.config.max_attempts,
            default=default,
            description=description,
        )

    def schema_version(self) -> int:
        """Schema version stored in the database."""
        return self._spin(lambda: _schema_version(self._conn), READ_BACKOFF, default=0)

    def sync_cluster(self, hosts: Iterable[Host]) -> None:
        """Register hosts that the store does not know yet.

        Existing rows are left untouched. New rows get a placeholder load that
        sorts them last while making them the first to be probed.

        Args:
            hosts: Hosts of the cluster the client is using
        """
        last_update = self._now_ms() - _ms(UNMEASURED_AGE)
        for host in hosts:
            self._spin(
                lambda: self._conn.execute(
                    """
                    INSERT OR IGNORE INTO servers
                        (address, last_update, access_time, load_avg, unknown)
                    VALUES (?, ?, ?, ?, 1)
                    """,
                    (host.address, last_update, UNMEASURED_ACCESS_TIME_MS, UNMEASURED_LOAD_AVG),
                ),
                WRITE_BACKOFF,
                description=f"sync {host}",
            )

    def _read_servers(self) -> list[HostLoad]:
        rows = self._conn.execute(
            "SELECT address, access_time, load_avg, unknown FROM servers"
        ).fetchall()
        return [
            HostLoad(
                host=Host(address),
                load=Load(
                    load_avg=load_avg,
                    access_time=timedelta(milliseconds=access_time),
                    unknown=bool(unknown),
                ),
            )
            for address, access_time, load_avg, unknown in rows
        ]

    def get_server_loads(self, requested: Iterable[Host]) -> ServerLoads:
        """Read all servers and split them by the requested cluster.

        A daemon that was just spawned may not have written anything yet, so
        the read is repeated until at least one requested host is present or
        the configured wait (10 s by default) has passed.

        Args:
            requested: Hosts of the cluster the client is using

        Returns:
            ServerLoads; both lists are empty when nothing of the requested
            cluster showed up in time or the database could not be read
        """
        wanted = {h.address for h in requested}
        deadline = time.monotonic() + self.config.wait_for_servers.total_seconds()

        try:
            while True:
                rval = ServerLoads()
                servers = self._spin(self._read_servers, READ_BACKOFF, default=[])
                for host_load in servers:
                    if host_load.host.address in wanted:
                        rval.online.append(host_load)
                    else:
                        rval.unused.append(host_load.host)

                if rval.online or not wanted:
                    return rval
                if time.monotonic() >= deadline:
                    break
                time.sleep(READ_BACKOFF.delay())
        except Exception as e:
            logger.warning(f"Failed reading from the database: {e}")

        return ServerLoads()

    def new_server(self, host_load: HostLoad) -> None:
        """Insert or replace the row of a host with a fresh measurement."""
        self._spin(
            lambda: self._conn.execute(
                """
                INSERT OR REPLACE INTO servers
                    (address, last_update, access_time, load_avg, unknown)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    host_load.host.address,
                    self._now_ms(),
                    host_load.load.access_time_ms,
                    host_load.load.load_avg,
                    int(host_load.load.unknown),
                ),
            ),
            WRITE_BACKOFF,
            description=f"new server {host_load.host}",
        )

    def update_server(self, host_load: HostLoad) -> None:
        """Store a fresh measurement for a host.

        Does nothing if the host was removed in the meantime by a client
        that no longer uses it.
        """
        self._spin(
            lambda: self._conn.execute(
                """
                UPDATE OR IGNORE servers
                SET last_update = ?, access_time = ?, load_avg = ?, unknown = ?
                WHERE address = ?
                """,
                (
                    self._now_ms(),
                    host_load.load.access_time_ms,
                    host_load.load.load_avg,
                    int(host_load.load.unknown),
                    host_load.host.address,
                ),
            ),
            WRITE_BACKOFF,
            description=f"update server {host_load.host}",
        )

    def remove_unused_servers(self, hosts: Iterable[Host]) -> None:
        """Delete the rows of exactly the given hosts."""
        for host in hosts:
            self._spin(
                lambda: self._conn.execute("DELETE FROM servers WHERE address = ?", (host.address,)),
                WRITE_BACKOFF,
                description=f"remove server {host}",
            )

    def _beat(self, table: str) -> None:
        self._spin(
            lambda: self._conn.execute(
                f"INSERT OR REPLACE INTO {table} (id, beat) VALUES (?, ?)",
                (BEAT_ID, self._now_ms()),
            ),
            WRITE_BACKOFF,
            description=f"{table} write",
        )

    def _beat_age(self, table: str) -> timedelta:
        def read() -> timedelta:
            row = self._conn.execute(f"SELECT beat FROM {table} WHERE id = ?", (BEAT_ID,)).fetchone()
            if row is None:
                return timedelta.max
            return timedelta(milliseconds=self._now_ms() - row[0])

        return self._spin(read, READ_BACKOFF, default=timedelta.max, description=f"{table} read")

    def daemon_beat(self) -> None:
        """Record that the daemon is alive."""
        self._beat("daemon_beat")

    def get_daemon_beat(self) -> timedelta:
        """Time since the daemon last beat; timedelta.max if it never did."""
        return self._beat_age("daemon_beat")

    def client_beat(self) -> None:
        """Record that a client used the store."""
        self._beat("client_beat")

    def get_client_beat(self) -> timedelta:
        """Time since a client last beat; timedelta.max if none ever did."""
        return self._beat_age("client_beat")

    def get_server_to_update(self) -> Host | None:
        """The host whose measurement is the oldest, or None if there are none."""

        def read() -> Host | None:
            row = self._conn.execute(
                "SELECT address FROM servers ORDER BY last_update ASC LIMIT 1"
            ).fetchone()
            return Host(row[0]) if row else None

        return self._spin(read, READ_BACKOFF, description="server to update")


def _is_contention(error: sqlite3.Error) -> bool:
    """The error is another process holding the lock, not a broken table."""
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None:
        return code & 0xFF in (SQLITE_BUSY, SQLITE_LOCKED)
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _schema_version(conn: sqlite3.Connection) -> int:
    """Version stored in the database, 0 for a new or unversioned database.

    A version table that cannot be read as an integer version (wrong
    columns, non-integer values) also counts as 0 so that it is migrated.
    Lock contention is raised and retried by the caller.
    """
    exists = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if exists is None:
        return 0

    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.DatabaseError as e:
        if _is_contention(e):
            raise
        logger.warning(f"Unreadable schema version, recreating the database: {e}")
        return 0

    version = row[0] if row else None
    if isinstance(version, bool) or not isinstance(version, int):
        if version is not None:
            logger.warning(f"Invalid schema version {version!r}, recreating the database")
        return 0
    return version


def _migrate(conn: sqlite3.Connection) -> None:
    """Drop and recreate every table at SCHEMA_VERSION in one transaction."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        # Another process may have migrated while we waited for the lock.
        current = _schema_version(conn)
        if current >= SCHEMA_VERSION:
            conn.execute("ROLLBACK")
            return

        for table in TABLES:
            conn.execute(f"DROP TABLE IF EXISTS {table}")
        for statement in SCHEMA:
            conn.execute(statement)
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    logger.info(
        "Migrated coordination database",
        extra={"from_version": current, "to_version": SCHEMA_VERSION},
    )
