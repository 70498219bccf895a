"""Counter sampling from procfs.

Reads /proc/stat, /proc/meminfo and /proc/net/dev once per tick and turns
the monotonic counters into percentages and rates. Delta state lives in a
CounterBaseline value that the Sampler owns and passes explicitly to
compute_sample(), so the arithmetic can be driven with synthetic readings.
"""

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path

import structlog

log = structlog.get_logger()

# Sources relative to the proc root
STAT_SOURCE = "stat"
MEMINFO_SOURCE = "meminfo"
NETDEV_SOURCE = "net/dev"

LOOPBACK_INTERFACE = "lo"


@dataclass(frozen=True)
class CpuTimes:
    """One raw CPU-time reading, in kernel ticks."""

    total: float
    idle: float
    iowait: float


@dataclass(frozen=True)
class NetCounters:
    """Summed interface byte counters and the monotonic time they were read."""

    rx_bytes: int
    tx_bytes: int
    time: float


@dataclass(frozen=True)
class MemoryStats:
    """Point-in-time memory figures, sizes in kB as reported by the kernel."""

    total: float = 0.0
    available: float = 0.0
    used_percentage: float = 0.0
    apps: float = 0.0
    cached: float = 0.0
    buffers: float = 0.0
    slab: float = 0.0
    shmem: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryStats":
        """Build from a dict, treating missing keys as 0."""
        return cls(**{name: float(data.get(name, 0.0)) for name in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Sample:
    """Everything measured in one tick."""

    timestamp: int  # ms since epoch
    cpu_usage: float
    cpu_cores: tuple[float, ...]
    cpu_iowait: float
    memory: MemoryStats
    network_download: float  # KB/s
    network_upload: float  # KB/s

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dict."""
        data = asdict(self)
        data["cpu_cores"] = list(self.cpu_cores)
        return data

    def to_json(self, indent: int | None = None) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "Sample":
        """Deserialize from a dict produced by to_dict()."""
        return cls(
            timestamp=int(data["timestamp"]),
            cpu_usage=float(data["cpu_usage"]),
            cpu_cores=tuple(float(v) for v in data.get("cpu_cores", [])),
            cpu_iowait=float(data.get("cpu_iowait", 0.0)),
            memory=MemoryStats.from_dict(data.get("memory", {})),
            network_download=float(data.get("network_download", 0.0)),
            network_upload=float(data.get("network_upload", 0.0)),
        )


@dataclass(frozen=True)
class RawReadings:
    """Raw values read from procfs in one tick. None means the source was unavailable."""

    cpu: CpuTimes | None
    cores: tuple[CpuTimes, ...]
    memory: MemoryStats
    net: NetCounters | None
    timestamp: int  # ms since epoch


@dataclass(frozen=True)
class CounterBaseline:
    """Previous tick's raw counters. Empty until the first tick."""

    cpu: CpuTimes | None = None
    cores: tuple[CpuTimes, ...] = field(default_factory=tuple)
    net: NetCounters | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_cpu_line(line: str) -> CpuTimes | None:
    """Parse one `cpu`/`cpuN` line from /proc/stat.

    non_idle = user + nice + system + irq + softirq, and
    total = idle + non_idle + iowait. Steal/guest columns are ignored.
    Returns None for lines with fewer than 8 fields.
    """
    parts = line.split()
    if len(parts) < 8:
        return None
    user, nice, system, idle, iowait, irq, softirq = (_to_float(p) for p in parts[1:8])
    non_idle = user + nice + system + irq + softirq
    return CpuTimes(total=idle + non_idle + iowait, idle=idle, iowait=iowait)


def parse_proc_stat(text: str) -> tuple[CpuTimes | None, tuple[CpuTimes, ...]]:
    """Return the aggregate reading and one reading per logical core."""
    overall: CpuTimes | None = None
    cores: list[CpuTimes] = []
    for line in text.splitlines():
        if line.startswith("cpu "):
            overall = parse_cpu_line(line)
        elif line.startswith("cpu") and line[3:4].isdigit():
            times = parse_cpu_line(line)
            if times is not None:
                cores.append(times)
    return overall, tuple(cores)


def parse_meminfo(text: str) -> MemoryStats:
    """Parse /proc/meminfo. Missing fields count as 0."""
    info: dict[str, float] = {}
    for line in text.splitlines():
        key, sep, rest = line.partition(":")
        if not sep:
            continue
        value = rest.split()
        if value:
            info[key.strip()] = _to_float(value[0])

    total = info.get("MemTotal", 0.0)
    available = info.get("MemAvailable", 0.0)
    used_percentage = (total - available) / total * 100.0 if total > 0 else 0.0

    return MemoryStats(
        total=total,
        available=available,
        used_percentage=used_percentage,
        apps=info.get("Active(anon)", 0.0) + info.get("Inactive(anon)", 0.0),
        cached=info.get("Cached", 0.0),
        buffers=info.get("Buffers", 0.0),
        slab=info.get("Slab", 0.0),
        shmem=info.get("Shmem", 0.0),
    )


def parse_net_dev(text: str) -> tuple[int, int]:
    """Sum received and transmitted bytes over all interfaces except loopback."""
    rx_total = 0
    tx_total = 0
    for line in text.splitlines():
        name, sep, rest = line.partition(":")
        if not sep or name.strip() == LOOPBACK_INTERFACE:
            continue
        values = rest.split()
        # Header lines have no numeric columns after the colon
        if len(values) < 9:
            continue
        try:
            rx_total += int(values[0])
            tx_total += int(values[8])
        except ValueError:
            continue
    return rx_total, tx_total


# ─────────────────────────────────────────────────────────────────────────────
# Delta arithmetic
# ─────────────────────────────────────────────────────────────────────────────


def cpu_percentages(
    prev: CpuTimes | None,
    cur: CpuTimes | None,
    *,
    clamp_negative: bool = False,
) -> tuple[float, float]:
    """Return (usage %, iowait %) between two readings.

    usage = 100 * (Δtotal - Δidle - Δiowait) / Δtotal
    iowait = 100 * Δiowait / Δtotal

    Both are 0 without a previous reading or when Δtotal <= 0.
    """
    if prev is None or cur is None:
        return 0.0, 0.0
    d_total = cur.total - prev.total
    if d_total <= 0:
        return 0.0, 0.0
    d_idle = cur.idle - prev.idle
    d_iowait = cur.iowait - prev.iowait
    if clamp_negative and (d_idle < 0 or d_iowait < 0):
        return 0.0, 0.0
    usage = (d_total - d_idle - d_iowait) / d_total * 100.0
    iowait = d_iowait / d_total * 100.0
    return usage, iowait


def net_rates(
    prev: NetCounters | None,
    cur: NetCounters | None,
    *,
    clamp_negative: bool = False,
) -> tuple[float, float]:
    """Return (download, upload) in KB/s between two readings."""
    if prev is None or cur is None:
        return 0.0, 0.0
    elapsed = cur.time - prev.time
    if elapsed <= 0:
        return 0.0, 0.0
    download = (cur.rx_bytes - prev.rx_bytes) / 1024.0 / elapsed
    upload = (cur.tx_bytes - prev.tx_bytes) / 1024.0 / elapsed
    if clamp_negative:
        download = max(download, 0.0)
        upload = max(upload, 0.0)
    return download, upload


def compute_sample(
    readings: RawReadings,
    baseline: CounterBaseline,
    *,
    clamp_negative: bool = False,
) -> tuple[Sample, CounterBaseline]:
    """Turn one tick's raw readings into a Sample and the next baseline.

    The baseline is always replaced with the latest readings, even when the
    deltas were unusable. A category whose source was unavailable keeps its
    old baseline so the next good reading still has something to diff against.
    """
    cpu_usage, cpu_iowait = cpu_percentages(
        baseline.cpu, readings.cpu, clamp_negative=clamp_negative
    )

    if baseline.cores and len(baseline.cores) == len(readings.cores):
        cores = tuple(
            cpu_percentages(prev, cur, clamp_negative=clamp_negative)[0]
            for prev, cur in zip(baseline.cores, readings.cores)
        )
    else:
        # First tick or core-count change
        cores = tuple(0.0 for _ in readings.cores)

    download, upload = net_rates(baseline.net, readings.net, clamp_negative=clamp_negative)

    sample = Sample(
        timestamp=readings.timestamp,
        cpu_usage=cpu_usage,
        cpu_cores=cores,
        cpu_iowait=cpu_iowait,
        memory=readings.memory,
        network_download=download,
        network_upload=upload,
    )
    next_baseline = CounterBaseline(
        cpu=readings.cpu if readings.cpu is not None else baseline.cpu,
        cores=readings.cores if readings.cores else baseline.cores,
        net=readings.net if readings.net is not None else baseline.net,
    )
    return sample, next_baseline


# ─────────────────────────────────────────────────────────────────────────────
# Sampler
# ─────────────────────────────────────────────────────────────────────────────


class Sampler:
    """Reads procfs each tick and keeps the counter baseline between ticks.

    tick() is synchronous and must not be called concurrently with itself;
    the daemon awaits each sample() before starting the next one.
    """

    def __init__(
        self,
        proc_root: Path | str = "/proc",
        *,
        clamp_negative_rates: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.proc_root = Path(proc_root)
        self.clamp_negative_rates = clamp_negative_rates
        self._clock = clock
        self._baseline = CounterBaseline()
        self._unavailable: set[str] = set()

    @property
    def baseline(self) -> CounterBaseline:
        """Counters from the previous tick."""
        return self._baseline

    def _read(self, source: str) -> str | None:
        """Read one proc source. Logs once when it goes missing and once when it returns."""
        path = self.proc_root / source
        try:
            text = path.read_text()
        except OSError as e:
            if source not in self._unavailable:
                self._unavailable.add(source)
                log.warning("source_unavailable", source=str(path), error=str(e))
            return None

        if source in self._unavailable:
            self._unavailable.discard(source)
            log.info("source_recovered", source=str(path))
        return text

    def read_sources(self) -> RawReadings:
        """Read every source once. Unavailable sources come back empty."""
        stat_text = self._read(STAT_SOURCE)
        if stat_text is not None:
            cpu, cores = parse_proc_stat(stat_text)
        else:
            cpu, cores = None, ()

        meminfo_text = self._read(MEMINFO_SOURCE)
        memory = parse_meminfo(meminfo_text) if meminfo_text is not None else MemoryStats()

        netdev_text = self._read(NETDEV_SOURCE)
        net = None
        if netdev_text is not None:
            rx, tx = parse_net_dev(netdev_text)
            net = NetCounters(rx_bytes=rx, tx_bytes=tx, time=self._clock())

        return RawReadings(
            cpu=cpu,
            cores=cores,
            memory=memory,
            net=net,
            timestamp=int(time.time() * 1000),
        )

    def tick(self) -> Sample:
        """Take one sample and advance the baseline."""
        readings = self.read_sources()
        sample, self._baseline = compute_sample(
            readings, self._baseline, clamp_negative=self.clamp_negative_rates
        )
        return sample

    async def sample(self) -> Sample:
        """Run tick() in the default executor (file reads are blocking)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.tick)
