"""
Unit tests for the coordination store.

Tests cover:
- Schema creation and migration
- Cluster sync placeholders and idempotency
- Server load reads, writes and removal
- Heartbeats
- Selection of the stalest server
"""

import sqlite3
from datetime import timedelta

import pytest

from distssh.config import StoreConfig
from distssh.store import SCHEMA_VERSION, CoordinationStore, StoreUnavailableError
from distssh.store import coordination_store
from distssh.types import Host, HostLoad, Load

A, B, C = Host("a"), Host("b"), Host("c")


def table_names(db_path):
    conn = sqlite3.connect(str(db_path))
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        return {name for (name,) in rows}
    finally:
        conn.close()


def server_rows(db_path):
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute(
            "SELECT address, last_update, access_time, load_avg, unknown FROM servers "
            "ORDER BY address"
        ).fetchall()
    finally:
        conn.close()


class TestOpen:
    """Tests for opening and migrating the database."""

    def test_creates_all_tables(self, store, db_path):
        """A new database gets every table and the current version."""
        assert table_names(db_path) >= {"schema_version", "servers", "daemon_beat", "client_beat"}
        assert store.schema_version() == SCHEMA_VERSION

    def test_creates_parent_directory(self, data_dir, store_config):
        """Missing directories are created."""
        path = data_dir / "nested" / "dir" / "db.sqlite3"
        with CoordinationStore.open(path, store_config):
            pass
        assert path.exists()

    def test_migrates_old_version(self, db_path, store_config):
        """An older schema is dropped and recreated."""
        conn = sqlite3.connect(str(db_path))
        conn.executescript(
            """
            CREATE TABLE schema_version (version INTEGER);
            INSERT INTO schema_version VALUES (0);
            CREATE TABLE servers (address TEXT, legacy TEXT);
            INSERT INTO servers VALUES ('old', 'x');
            CREATE TABLE daemon_beat (id INTEGER, beat TEXT);
            """
        )
        conn.close()

        with CoordinationStore.open(db_path, store_config) as store:
            assert store.schema_version() == SCHEMA_VERSION
            assert store.get_server_to_update() is None

        assert table_names(db_path) >= {"schema_version", "servers", "daemon_beat", "client_beat"}
        assert server_rows(db_path) == []

    def test_migrates_unversioned_database(self, db_path, store_config):
        """A database without a version table is treated as version 0."""
        conn = sqlite3.connect(str(db_path))
        conn.execute("CREATE TABLE servers (address TEXT)")
        conn.commit()
        conn.close()

        with CoordinationStore.open(db_path, store_config) as store:
            assert store.schema_version() == SCHEMA_VERSION
            store.sync_cluster([A])

        assert [row[0] for row in server_rows(db_path)] == ["a"]

    @pytest.mark.parametrize(
        "script",
        [
            "CREATE TABLE schema_version (ver INTEGER); INSERT INTO schema_version VALUES (1);",
            "CREATE TABLE schema_version (version TEXT); INSERT INTO schema_version VALUES ('old');",
            "CREATE TABLE schema_version (version BLOB); INSERT INTO schema_version VALUES (x'01');",
            "CREATE TABLE schema_version (version REAL); INSERT INTO schema_version VALUES (1.5);",
        ],
        ids=["other-column", "text-value", "blob-value", "real-value"],
    )
    def test_migrates_malformed_version_table(self, db_path, script):
        """A version table that holds no integer version is recreated."""
        conn = sqlite3.connect(str(db_path))
        conn.executescript(script + "CREATE TABLE servers (address TEXT);")
        conn.close()

        config = StoreConfig(max_attempts=3, wait_for_servers=timedelta(0))
        with CoordinationStore.open(db_path, config) as store:
            assert store.schema_version() == SCHEMA_VERSION
            store.sync_cluster([A])
            assert [hl.host for hl in store.get_server_loads([A]).online] == [A]

        assert table_names(db_path) >= {"schema_version", "servers", "daemon_beat", "client_beat"}

    def test_locked_version_table_is_not_recreated(self, store, db_path):
        """Lock contention while reading the version is raised for a retry."""
        holder = sqlite3.connect(str(db_path), isolation_level=None)
        reader = sqlite3.connect(str(db_path), timeout=0)
        try:
            holder.execute("BEGIN EXCLUSIVE")
            with pytest.raises(sqlite3.OperationalError, match="locked"):
                coordination_store._schema_version(reader)
        finally:
            holder.execute("ROLLBACK")
            holder.close()
            reader.close()

        assert store.schema_version() == SCHEMA_VERSION

    def test_reopen_keeps_data(self, db_path, store_config):
        """Opening a current database does not touch its content."""
        with CoordinationStore.open(db_path, store_config) as store:
            store.new_server(HostLoad(A, Load(0.5, timedelta(milliseconds=10))))

        with CoordinationStore.open(db_path, store_config) as store:
            loads = store.get_server_loads([A])

        assert [hl.host for hl in loads.online] == [A]
        assert loads.online[0].load.load_avg == 0.5

    def test_gives_up_only_with_max_attempts(self, data_dir):
        """A finite attempt cap turns an unusable path into an error."""
        config = StoreConfig(max_attempts=2)
        # A directory cannot be opened as a database.
        with pytest.raises(StoreUnavailableError):
            CoordinationStore.open(data_dir, config)


class TestSyncCluster:
    """Tests for registering cluster hosts."""

    def test_inserts_placeholders(self, store, db_path, clock):
        """New hosts get the never-measured placeholder."""
        store.sync_cluster([A, B])

        rows = server_rows(db_path)
        expected_update = int(clock() * 1000) - 3600 * 1000
        assert rows == [
            ("a", expected_update, 60000, 9999.0, 1),
            ("b", expected_update, 60000, 9999.0, 1),
        ]

    def test_idempotent(self, store, db_path, clock):
        """Syncing twice gives the same rows as syncing once."""
        store.sync_cluster([A, B, C])
        first = server_rows(db_path)

        clock.advance(60)
        store.sync_cluster([A, B, C])

        assert server_rows(db_path) == first

    def test_keeps_measured_hosts(self, store):
        """Hosts with a measurement are not reset to the placeholder."""
        store.new_server(HostLoad(A, Load(0.5, timedelta(milliseconds=10))))
        store.sync_cluster([A, B])

        loads = {hl.host: hl.load for hl in store.get_server_loads([A, B]).online}
        assert loads[A] == Load(0.5, timedelta(milliseconds=10), False)
        assert loads[B].unknown is True


class TestServerLoads:
    """Tests for reading and writing server loads."""

    def test_partitions_by_requested_cluster(self, store):
        """Hosts outside the requested cluster are reported as unused."""
        store.sync_cluster([A, B, C])

        loads = store.get_server_loads([A, C])

        assert [hl.host for hl in loads.online] == [A, C]
        assert loads.unused == [B]

    def test_synced_hosts_are_unknown(self, store):
        """Freshly synced hosts carry the placeholder load."""
        store.sync_cluster([A, B, C])

        loads = store.get_server_loads([A, B, C])

        assert loads.unused == []
        assert len(loads.online) == 3
        for hl in loads.online:
            assert hl.load.unknown is True
            assert hl.load.load_avg == 9999.0
            assert hl.load.access_time == timedelta(minutes=1)

    def test_gives_up_after_wait(self, store):
        """Nothing of the cluster in the store yields empty lists."""
        store.sync_cluster([B])

        loads = store.get_server_loads([A])

        assert loads.online == []
        assert loads.unused == []

    def test_empty_request_reports_everything_unused(self, store):
        store.sync_cluster([A, B])

        loads = store.get_server_loads([])

        assert loads.online == []
        assert loads.unused == [A, B]

    def test_new_server_replaces_row(self, store):
        """new_server overwrites the placeholder."""
        store.sync_cluster([A])
        store.new_server(HostLoad(A, Load(1.25, timedelta(milliseconds=42), False)))

        (hl,) = store.get_server_loads([A]).online
        assert hl.load == Load(1.25, timedelta(milliseconds=42), False)

    def test_update_server(self, store):
        """update_server stores the measurement of an existing host."""
        store.sync_cluster([A])
        store.update_server(HostLoad(A, Load(0.1, timedelta(milliseconds=7), False)))

        (hl,) = store.get_server_loads([A]).online
        assert hl.load == Load(0.1, timedelta(milliseconds=7), False)

    def test_update_server_ignores_removed_host(self, store, db_path):
        """A host removed by a client is not brought back by update_server."""
        store.sync_cluster([A])
        store.remove_unused_servers([A])

        store.update_server(HostLoad(A, Load(0.1, timedelta(milliseconds=7), False)))

        assert server_rows(db_path) == []

    def test_new_server_resurrects_removed_host(self, store, db_path):
        """new_server upserts even if the host was removed meanwhile."""
        store.sync_cluster([A])
        store.remove_unused_servers([A])

        store.new_server(HostLoad(A, Load(0.1, timedelta(milliseconds=7), False)))

        assert [row[0] for row in server_rows(db_path)] == ["a"]

    def test_remove_unused_servers(self, store, db_path):
        """Exactly the given hosts are deleted."""
        store.sync_cluster([A, B, C])

        store.remove_unused_servers([A, C])

        assert [row[0] for row in server_rows(db_path)] == ["b"]

    def test_remove_nothing(self, store, db_path):
        store.sync_cluster([A])
        store.remove_unused_servers([])
        assert len(server_rows(db_path)) == 1


class TestHeartbeats:
    """Tests for daemon and client heartbeats."""

    def test_never_beaten(self, store):
        """Without a beat the age is the maximal duration."""
        assert store.get_daemon_beat() == timedelta.max
        assert store.get_client_beat() == timedelta.max

    def test_daemon_beat_age(self, store, clock):
        store.daemon_beat()
        clock.advance(5)

        assert store.get_daemon_beat() == timedelta(seconds=5)
        assert store.get_client_beat() == timedelta.max

    def test_client_beat_age(self, store, clock):
        store.client_beat()
        clock.advance(2.5)
        store.client_beat()
        clock.advance(1)

        assert store.get_client_beat() == timedelta(seconds=1)

    def test_single_row(self, store, db_path):
        """Beating overwrites the one heartbeat row."""
        for _ in range(3):
            store.daemon_beat()

        conn = sqlite3.connect(str(db_path))
        try:
            assert conn.execute("SELECT COUNT(*) FROM daemon_beat").fetchone() == (1,)
        finally:
            conn.close()


class TestServerToUpdate:
    """Tests for picking the stalest server."""

    def test_empty_store(self, store):
        assert store.get_server_to_update() is None

    def test_oldest_update_first(self, store, clock):
        """The host with the oldest last update is returned."""
        for host in (C, A, B):
            store.new_server(HostLoad(host, Load(0.5)))
            clock.advance(1)

        assert store.get_server_to_update() == C

        store.update_server(HostLoad(C, Load(0.5)))
        assert store.get_server_to_update() == A

    def test_synced_hosts_are_most_overdue(self, store, clock):
        """A newly synced host is probed before any measured host."""
        store.new_server(HostLoad(A, Load(0.5)))
        clock.advance(10)
        store.sync_cluster([B])

        assert store.get_server_to_update() == B
