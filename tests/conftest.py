"""Shared test fixtures for ags-stats."""

import asyncio
import subprocess
import sys
import tempfile
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest

from ags_stats.config import Config
from ags_stats.sampler import MemoryStats, Sample

PROC_STAT = """\
cpu  1000 0 500 7000 200 0 0 0 0 0
cpu0 500 0 250 3500 100 0 0 0 0 0
cpu1 500 0 250 3500 100 0 0 0 0 0
intr 123456 0 0
ctxt 987654
btime 1700000000
"""

PROC_MEMINFO = """\
MemTotal:       16000000 kB
MemFree:         2000000 kB
MemAvailable:    8000000 kB
Buffers:          300000 kB
Cached:          4000000 kB
Active(anon):    3000000 kB
Inactive(anon):  1000000 kB
Shmem:            200000 kB
Slab:             500000 kB
"""

PROC_NET_DEV = """\
Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
    lo: 5000000    1000    0    0    0     0          0         0  5000000    1000    0    0    0     0       0          0
  eth0: 1048576    2000    0    0    0     0          0         0   524288    1500    0    0    0     0       0          0
 wlan0: 1048576    2000    0    0    0     0          0         0   524288    1500    0    0    0     0       0          0
"""


def write_proc(
    root: Path,
    stat: str | None = PROC_STAT,
    meminfo: str | None = PROC_MEMINFO,
    net_dev: str | None = PROC_NET_DEV,
) -> Path:
    """Populate a fake proc root. Passing None removes that source."""
    (root / "net").mkdir(parents=True, exist_ok=True)
    for rel, text in (("stat", stat), ("meminfo", meminfo), ("net/dev", net_dev)):
        path = root / rel
        if text is None:
            path.unlink(missing_ok=True)
        else:
            path.write_text(text)
    return root


def cpu_line(name: str, user: int, idle: int, iowait: int, system: int = 0) -> str:
    """Build a /proc/stat cpu line with nice/irq/softirq at zero."""
    return f"{name} {user} 0 {system} {idle} {iowait} 0 0 0 0 0"


@pytest.fixture
def proc_root(tmp_path: Path) -> Path:
    """Fake proc root populated with realistic sources."""
    return write_proc(tmp_path / "proc")


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~104-108 characters.
    pytest's tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="ags_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def live_pid() -> Iterator[int]:
    """PID of a separate process that stays alive for the duration of the test."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    try:
        yield proc.pid
    finally:
        proc.kill()
        proc.wait()


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def make_sample(
    timestamp: int = 1_700_000_000_000,
    cpu_usage: float = 25.0,
    cpu_cores: tuple[float, ...] = (20.0, 30.0),
    cpu_iowait: float = 5.0,
    used_percentage: float = 50.0,
    total: float = 16_000_000.0,
    download: float = 100.0,
    upload: float = 50.0,
) -> Sample:
    """Create a Sample for testing."""
    return Sample(
        timestamp=timestamp,
        cpu_usage=cpu_usage,
        cpu_cores=cpu_cores,
        cpu_iowait=cpu_iowait,
        memory=MemoryStats(
            total=total,
            available=total * (1 - used_percentage / 100),
            used_percentage=used_percentage,
            apps=4_000_000.0,
            cached=4_000_000.0,
            buffers=300_000.0,
            slab=500_000.0,
            shmem=200_000.0,
        ),
        network_download=download,
        network_upload=upload,
    )


def patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Apply Config path property patches to the given ExitStack.

    Every runtime file, the config file and the log directory land under
    base_path. Use a short base_path when the test binds the socket.
    """
    for name, target in (
        ("config_dir", base_path / "config"),
        ("state_dir", base_path / "state"),
        ("runtime_dir", base_path),
        ("pid_path", base_path / "service.pid"),
        ("socket_path", base_path / "stats.sock"),
        ("history_path", base_path / "history.json"),
        ("latest_path", base_path / "latest.json"),
    ):
        stack.enter_context(
            patch.object(Config, name, new_callable=lambda t=target: property(lambda self: t))
        )


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch all Config paths into a short temporary directory.

    Yields the base path for tests that need to reference it directly.
    """
    with ExitStack() as stack:
        patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path


async def wait_until(condition, timeout=2.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
