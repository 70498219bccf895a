"""Configuration system for ags-stats."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class SystemConfig:
    """Daemon timing, history depth and log rotation."""

    sample_interval: float = 1.0  # Seconds between ticks
    history_size: int = 60  # Samples kept per metric
    heartbeat_samples: int = 60  # Log heartbeat every N ticks (~1 minute at 1Hz)
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class SamplerConfig:
    """Where counters are read from and how anomalies are reported."""

    proc_root: str = "/proc"
    # Counter resets show up as negative rates unless clamped
    clamp_negative_rates: bool = False


@dataclass
class ServerConfig:
    """Snapshot socket server configuration."""

    write_timeout: float = 5.0  # Seconds to drain a snapshot to one client (0 = no limit)


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "ags-stats"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "ags-stats"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the socket, data files and PID marker.

        Lives under /tmp so nothing survives a reboot. Graph widgets read
        from here, so the location is part of the external interface.
        """
        return Path("/tmp/ags-stats")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID marker path."""
        return self.runtime_dir / "service.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket serving history snapshots."""
        return self.runtime_dir / "stats.sock"

    @property
    def history_path(self) -> Path:
        """History snapshot file, rewritten every tick."""
        return self.runtime_dir / "history.json"

    @property
    def latest_path(self) -> Path:
        """Latest sample file, rewritten every tick."""
        return self.runtime_dir / "latest.json"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "sampler", "server"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        This ensures Config() and Config.load() use identical defaults.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            system=_load_system_config(data.get("system", {})),
            sampler=_load_sampler_config(data.get("sampler", {})),
            server=_load_server_config(data.get("server", {})),
        )


def _number(data: dict, key: str, default: float, *, integer: bool = False) -> float:
    """Read a numeric field, rejecting strings and booleans with ValueError."""
    value = data.get(key, default)
    allowed = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise ValueError(f"{key} must be {kind}, got {value!r}")
    return int(value) if integer else float(value)


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, using dataclass defaults for missing fields."""
    d = SystemConfig()

    sample_interval = _number(data, "sample_interval", d.sample_interval)
    history_size = _number(data, "history_size", d.history_size, integer=True)
    heartbeat_samples = _number(data, "heartbeat_samples", d.heartbeat_samples, integer=True)

    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")
    if history_size < 1:
        raise ValueError(f"history_size must be >= 1, got {history_size}")
    if heartbeat_samples < 1:
        raise ValueError(f"heartbeat_samples must be >= 1, got {heartbeat_samples}")

    return SystemConfig(
        sample_interval=sample_interval,
        history_size=history_size,
        heartbeat_samples=heartbeat_samples,
        log_max_bytes=_number(data, "log_max_bytes", d.log_max_bytes, integer=True),
        log_backup_count=_number(data, "log_backup_count", d.log_backup_count, integer=True),
    )


def _load_sampler_config(data: dict) -> SamplerConfig:
    """Load sampler config from TOML data."""
    d = SamplerConfig()
    proc_root = data.get("proc_root", d.proc_root)
    clamp = data.get("clamp_negative_rates", d.clamp_negative_rates)
    if not isinstance(proc_root, str):
        raise ValueError(f"proc_root must be a string, got {proc_root!r}")
    if not isinstance(clamp, bool):
        raise ValueError(f"clamp_negative_rates must be true or false, got {clamp!r}")
    return SamplerConfig(proc_root=str(proc_root), clamp_negative_rates=clamp)


def _load_server_config(data: dict) -> ServerConfig:
    """Load server config from TOML data."""
    d = ServerConfig()
    write_timeout = _number(data, "write_timeout", d.write_timeout)
    if write_timeout < 0:
        raise ValueError(f"write_timeout must be >= 0, got {write_timeout}")
    return ServerConfig(write_timeout=write_timeout)
