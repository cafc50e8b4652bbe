"""
Configuration management for distssh.

All configuration comes from environment variables, loaded with
pydantic-settings. Every setting has a default that works for a single
user on a shared-filesystem cluster.

Environment prefixes:
    DISTSSH_STORE_   coordination store (database file, busy timeout)
    DISTSSH_PROBE_   remote load probe (timeout, ssh command line)
    DISTSSH_DAEMON_  background updater (intervals, liveness thresholds)
    DISTSSH_LOG_     logging

Invariants:
    - Durations are timedelta values; env values are seconds or ISO 8601
    - The store path is expanded (~) before use

How to change safely:
    - Add new settings with defaults so existing environments keep working
    - The daemon is started with the client's environment, so both sides
      see the same settings
"""

from __future__ import annotations

import logging
import shlex
import sys
from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SSH_NO_LOGIN_OPTIONS = [
    "-oStrictHostKeyChecking=no",
    "-oPasswordAuthentication=no",
    "-oBatchMode=yes",
]


def default_remote_command() -> str:
    """Command line that runs `distssh localload` on the remote host.

    The cluster is expected to share the filesystem, so the interpreter
    running this process exists at the same path on the remote side.
    """
    return f"{shlex.quote(sys.executable)} -m distssh localload"


class StoreConfig(BaseSettings):
    """Coordination store configuration.

    Attributes:
        db_path: SQLite database shared by the daemon and all clients
        busy_timeout_ms: SQLite busy timeout before an operation fails
            and is retried by the backoff loop
        wait_for_servers: How long a client waits for a freshly started
            daemon to populate the server table
        max_attempts: Cap on retries per operation; None retries forever
    """

    db_path: Path = Field(default=Path("~/.cache/distssh/distssh.sqlite3"))
    busy_timeout_ms: int = Field(default=1000)
    wait_for_servers: timedelta = Field(default=timedelta(seconds=10))
    max_attempts: int | None = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="DISTSSH_STORE_")

    @property
    def resolved_db_path(self) -> Path:
        return self.db_path.expanduser()


class ProbeConfig(BaseSettings):
    """Remote load probe configuration.

    Attributes:
        timeout: Wall time after which a probe is killed
        poll_interval: How often the probe checks the ssh process
        ssh_command: ssh executable
        ssh_options: Options that make ssh fail instead of prompting
        remote_command: Shell command run on the remote host; must print
            the load as the last line of stdout
    """

    timeout: timedelta = Field(default=timedelta(seconds=2))
    poll_interval: timedelta = Field(default=timedelta(milliseconds=25))
    ssh_command: str = Field(default="ssh")
    ssh_options: list[str] = Field(default_factory=lambda: list(SSH_NO_LOGIN_OPTIONS))
    remote_command: str = Field(default_factory=default_remote_command)

    model_config = SettingsConfigDict(env_prefix="DISTSSH_PROBE_")

    def command_for(self, address: str) -> list[str]:
        """Full argv used to measure `address`."""
        return [self.ssh_command, "-q", *self.ssh_options, address, self.remote_command]


class DaemonConfig(BaseSettings):
    """Background updater configuration.

    Attributes:
        update_interval: Sleep between two probes
        heartbeat_timeout: A daemon whose beat is older than this is dead
        idle_timeout: The daemon exits when no client has beaten for this long
    """

    update_interval: timedelta = Field(default=timedelta(seconds=4))
    heartbeat_timeout: timedelta = Field(default=timedelta(minutes=2))
    idle_timeout: timedelta = Field(default=timedelta(minutes=30))

    model_config = SettingsConfigDict(env_prefix="DISTSSH_DAEMON_")


class LogConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        format: Log format (text, json)
    """

    level: str = Field(default="WARNING")
    format: str = Field(default="text")

    model_config = SettingsConfigDict(env_prefix="DISTSSH_LOG_")


class Settings(BaseSettings):
    """Complete configuration, one section per component."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    log: LogConfig = Field(default_factory=LogConfig)

    model_config = SettingsConfigDict(env_prefix="DISTSSH_")

    def validate_settings(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store.busy_timeout_ms < 0:
            raise ValueError("DISTSSH_STORE_BUSY_TIMEOUT_MS must not be negative")
        if self.store.max_attempts is not None and self.store.max_attempts < 1:
            raise ValueError("DISTSSH_STORE_MAX_ATTEMPTS must be at least 1")
        if self.probe.timeout <= timedelta(0):
            raise ValueError("DISTSSH_PROBE_TIMEOUT must be positive")
        if self.probe.poll_interval <= timedelta(0):
            raise ValueError("DISTSSH_PROBE_POLL_INTERVAL must be positive")
        if self.daemon.update_interval < timedelta(0):
            raise ValueError("DISTSSH_DAEMON_UPDATE_INTERVAL must not be negative")
        if self.daemon.heartbeat_timeout <= self.daemon.update_interval:
            logger.warning(
                "Daemon heartbeat timeout is not larger than the update interval; "
                "clients will keep spawning new daemons"
            )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "distssh configuration loaded",
            extra={
                "db_path": str(self.store.resolved_db_path),
                "probe_timeout_s": self.probe.timeout.total_seconds(),
                "update_interval_s": self.daemon.update_interval.total_seconds(),
                "heartbeat_timeout_s": self.daemon.heartbeat_timeout.total_seconds(),
                "idle_timeout_s": self.daemon.idle_timeout.total_seconds(),
                "log_level": self.log.level,
            },
        )
