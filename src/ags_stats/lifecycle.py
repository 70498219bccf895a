"""Single-instance enforcement via a PID marker file."""

import os
from pathlib import Path

import psutil
import structlog

from ags_stats import logging as console

log = structlog.get_logger()


def pid_is_live(pid: int, *, quiet: bool = False) -> bool:
    """Return True if pid names a running (non-zombie) process.

    A process we are not allowed to inspect is assumed to be running.
    """
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        if not quiet:
            log.warning("pid_check_access_denied", pid=pid)
        return True


class LifecycleGuard:
    """Guarantees at most one daemon per host.

    The marker is never removed on shutdown. Whether a recorded pid is still
    alive is re-checked at every startup.
    """

    def __init__(self, pid_path: Path) -> None:
        self.pid_path = pid_path

    def _read_marker(self) -> int:
        return int(self.pid_path.read_text().strip())

    def read_pid(self) -> int | None:
        """Return the recorded pid, or None if the marker is missing or unreadable."""
        try:
            return self._read_marker()
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning("pid_file_invalid", path=str(self.pid_path), error=str(e))
            return None

    def check_running(self) -> int | None:
        """Return the pid of a live daemon, or None if the marker is absent or stale."""
        pid = self.read_pid()
        if pid is None:
            return None
        if pid == os.getpid():
            # Our own pid left over from a previous run that happened to reuse it
            return None
        if pid_is_live(pid):
            return pid
        log.info("pid_file_stale", pid=pid)
        console.stale_pid(pid)
        return None

    def peek_running(self) -> int | None:
        """Like check_running(), without logging or console output. Used by status."""
        try:
            pid = self._read_marker()
        except (OSError, ValueError):
            return None
        if pid == os.getpid() or not pid_is_live(pid, quiet=True):
            return None
        return pid

    def write_pid(self) -> None:
        """Record the current pid, overwriting whatever was there."""
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(f"{os.getpid()}\n")
        log.debug("pid_file_written", path=str(self.pid_path), pid=os.getpid())

    def acquire_or_exit(self) -> None:
        """Claim the marker or terminate the process with exit status 1.

        Must run before any other component touches shared state: on conflict
        nothing is written.
        """
        running = self.check_running()
        if running is not None:
            log.error("daemon_already_running", pid=running, path=str(self.pid_path))
            console.already_running(running)
            raise SystemExit(1)
        self.write_pid()
