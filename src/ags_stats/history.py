"""Rolling per-metric history shared between the tick driver and socket clients.

Every buffer is pre-filled with zeros and holds exactly `capacity` values.
HistoryStore applies a whole sample under one lock, so a snapshot always
reflects either the state before a tick or the state after it.
"""

import json
import threading
from collections import deque
from dataclasses import asdict, dataclass

from ags_stats.sampler import Sample

DEFAULT_CAPACITY = 60


class HistoryBuffer:
    """Fixed-length FIFO of floats. Pushing evicts the oldest value."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._values: deque[float] = deque([0.0] * capacity, maxlen=capacity)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def capacity(self) -> int:
        """Return the fixed number of values held."""
        return self._values.maxlen or 0

    def push(self, value: float) -> None:
        """Append a value, dropping the oldest."""
        self._values.append(float(value))

    def values(self) -> tuple[float, ...]:
        """Copy of the contents, oldest first."""
        return tuple(self._values)


@dataclass(frozen=True)
class HistorySnapshot:
    """Immutable copy of every history buffer plus the latest scalars.

    Field names are the wire format read by graph widgets; keep them stable.
    """

    cpu: tuple[float, ...]
    cpu_cores: tuple[tuple[float, ...], ...]
    cpu_iowait: tuple[float, ...]
    memory: tuple[float, ...]
    memory_total: float
    memory_apps: tuple[float, ...]
    memory_cached: tuple[float, ...]
    memory_buffers: tuple[float, ...]
    memory_slab: tuple[float, ...]
    memory_shmem: tuple[float, ...]
    network_download: tuple[float, ...]
    network_upload: tuple[float, ...]
    last_update: int  # ms since epoch, 0 before the first tick

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dict (tuples become lists)."""
        data = asdict(self)
        for key, value in data.items():
            if key == "cpu_cores":
                data[key] = [list(core) for core in value]
            elif isinstance(value, tuple):
                data[key] = list(value)
        return data

    def to_json(self, indent: int | None = None) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "HistorySnapshot":
        """Deserialize from a dict produced by to_dict()."""

        def series(key: str) -> tuple[float, ...]:
            return tuple(float(v) for v in data.get(key, []))

        return cls(
            cpu=series("cpu"),
            cpu_cores=tuple(tuple(float(v) for v in core) for core in data.get("cpu_cores", [])),
            cpu_iowait=series("cpu_iowait"),
            memory=series("memory"),
            memory_total=float(data.get("memory_total", 0.0)),
            memory_apps=series("memory_apps"),
            memory_cached=series("memory_cached"),
            memory_buffers=series("memory_buffers"),
            memory_slab=series("memory_slab"),
            memory_shmem=series("memory_shmem"),
            network_download=series("network_download"),
            network_upload=series("network_upload"),
            last_update=int(data.get("last_update", 0)),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> "HistorySnapshot":
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(data))


class HistoryStore:
    """Per-metric history with a single writer and any number of readers.

    record() and snapshot() take the same lock. The lock is only held while
    copying in-memory values, so callers must not (and cannot) hold it across
    I/O.
    """

    def __init__(self, core_count: int, capacity: int = DEFAULT_CAPACITY) -> None:
        self._lock = threading.Lock()
        self._capacity = capacity
        self._cpu = HistoryBuffer(capacity)
        self._cpu_cores = [HistoryBuffer(capacity) for _ in range(max(core_count, 0))]
        self._cpu_iowait = HistoryBuffer(capacity)
        self._memory = HistoryBuffer(capacity)
        self._memory_apps = HistoryBuffer(capacity)
        self._memory_cached = HistoryBuffer(capacity)
        self._memory_buffers = HistoryBuffer(capacity)
        self._memory_slab = HistoryBuffer(capacity)
        self._memory_shmem = HistoryBuffer(capacity)
        self._network_download = HistoryBuffer(capacity)
        self._network_upload = HistoryBuffer(capacity)
        self._memory_total = 0.0
        self._last_update = 0

    @property
    def capacity(self) -> int:
        """Values held per metric."""
        return self._capacity

    @property
    def core_count(self) -> int:
        """Number of per-core buffers, fixed at construction."""
        return len(self._cpu_cores)

    def record(self, sample: Sample) -> None:
        """Append one sample to every buffer as a single atomic update.

        Core readings beyond the startup core count are dropped; cores with
        no reading this tick get 0.
        """
        with self._lock:
            self._cpu.push(sample.cpu_usage)
            self._cpu_iowait.push(sample.cpu_iowait)

            for i, buf in enumerate(self._cpu_cores):
                buf.push(sample.cpu_cores[i] if i < len(sample.cpu_cores) else 0.0)

            mem = sample.memory
            self._memory.push(mem.used_percentage)
            self._memory_apps.push(mem.apps)
            self._memory_cached.push(mem.cached)
            self._memory_buffers.push(mem.buffers)
            self._memory_slab.push(mem.slab)
            self._memory_shmem.push(mem.shmem)
            self._network_download.push(sample.network_download)
            self._network_upload.push(sample.network_upload)

            self._memory_total = mem.total
            self._last_update = sample.timestamp

    def snapshot(self) -> HistorySnapshot:
        """Return a consistent copy of all buffers."""
        with self._lock:
            return HistorySnapshot(
                cpu=self._cpu.values(),
                cpu_cores=tuple(buf.values() for buf in self._cpu_cores),
                cpu_iowait=self._cpu_iowait.values(),
                memory=self._memory.values(),
                memory_total=self._memory_total,
                memory_apps=self._memory_apps.values(),
                memory_cached=self._memory_cached.values(),
                memory_buffers=self._memory_buffers.values(),
                memory_slab=self._memory_slab.values(),
                memory_shmem=self._memory_shmem.values(),
                network_download=self._network_download.values(),
                network_upload=self._network_upload.values(),
                last_update=self._last_update,
            )
