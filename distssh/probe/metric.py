"""
Remote load probe.

Logs into a host with ssh, runs `distssh localload` there and reads the
load average it prints. A host that hangs must not hang the caller, so the
ssh process is polled and killed (with its whole process group) once the
timeout has passed.

Invariants:
    - measure() returns within roughly timeout + one poll interval
    - A killed probe process is always reaped
    - Every failure (spawn error, non-zero exit, timeout, garbage output)
      yields Load.failed(), which ranks after every real measurement

How to change safely:
    - The remote side prints exactly one number as its last stdout line;
      keep localload.py and the parser here in step
"""

from __future__ import annotations

import logging
import math
import os
import signal
import subprocess
import tempfile
import time
from datetime import timedelta
from enum import Enum

from ..config import ProbeConfig
from ..types import DistsshError, Host, Load

logger = logging.getLogger(__name__)


class ProbeError(DistsshError):
    """The probe did not produce a measurement."""

    pass


class ExitStatus(Enum):
    """How the probe process ended."""

    NONE = "none"
    ERROR = "error"
    TIMEOUT = "timeout"
    OK = "ok"


def measure(
    host: Host,
    timeout: timedelta | None = None,
    config: ProbeConfig | None = None,
    command: list[str] | None = None,
) -> Load:
    """Log in on `host` and measure its load.

    Args:
        host: Remote host to check
        timeout: Give up and kill the probe after this long (defaults to
            config.timeout)
        config: Probe configuration
        command: argv to run instead of the configured ssh command line

    Returns:
        The measured Load, or Load.failed() if the host could not be measured
    """
    config = config or ProbeConfig()
    timeout = timeout if timeout is not None else config.timeout
    argv = command if command is not None else config.command_for(host.address)

    try:
        return _run_probe(argv, timeout, config.poll_interval)
    except Exception as e:
        logger.debug(f"Unable to measure the load of {host}: {e}")

    return Load.failed()


def _run_probe(argv: list[str], timeout: timedelta, poll_interval: timedelta) -> Load:
    start = time.monotonic()
    limit = timeout.total_seconds()
    interval = poll_interval.total_seconds()

    # Output goes to files, a pipe would block a chatty remote once full.
    with tempfile.TemporaryFile() as stdout, tempfile.TemporaryFile() as stderr:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            start_new_session=True,
        )

        status = ExitStatus.NONE
        while status is ExitStatus.NONE:
            returncode = proc.poll()
            if returncode == 0:
                status = ExitStatus.OK
            elif returncode is not None:
                status = ExitStatus.ERROR
            elif time.monotonic() - start >= limit:
                status = ExitStatus.TIMEOUT
                _kill(proc)
            else:
                time.sleep(interval)
        elapsed = time.monotonic() - start

        if status is ExitStatus.TIMEOUT:
            raise ProbeError(f"timed out after {elapsed:.3f}s")

        if status is ExitStatus.ERROR:
            stderr.seek(0)
            raise ProbeError(
                f"exited with status {proc.returncode}: "
                f"{stderr.read().decode(errors='replace').strip()}"
            )

        stdout.seek(0)
        output = stdout.read()

    return Load(
        load_avg=_parse_load(output),
        access_time=timedelta(seconds=elapsed),
        unknown=False,
    )


def _kill(proc: subprocess.Popen) -> None:
    """Kill the probe's process group and reap the probe."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    # Must wait or a zombie is left behind.
    proc.wait()


def _parse_load(stdout: bytes) -> float:
    lines = [line for line in stdout.decode(errors="replace").splitlines() if line.strip()]
    if not lines:
        raise ProbeError("no output")
    try:
        load = float(lines[-1].strip())
    except ValueError:
        raise ProbeError(f"unable to parse load from {lines[-1]!r}")
    # nan and inf would break the ordering of loads.
    if not math.isfinite(load):
        raise ProbeError(f"load is not a finite number: {lines[-1]!r}")
    return load
