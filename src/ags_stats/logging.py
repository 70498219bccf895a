"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (daemon_started, heartbeat, already_running, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

from ags_stats.formatting import format_cores, format_kb, format_rate

if TYPE_CHECKING:
    from ags_stats.config import Config
    from ags_stats.sampler import Sample

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    SIGNAL = "⚡"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def percent_color(value: float) -> str:
    """Return Rich color name for a utilisation percentage."""
    if value >= 90:
        return "bright_red"
    elif value >= 60:
        return "bright_yellow"
    return "green"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}")


def config_summary(interval: float, history_size: int, core_count: int) -> None:
    """Log config summary."""
    info(
        f"Config: interval=[cyan]{interval}s[/], history=[cyan]{history_size}[/], "
        f"cores=[cyan]{core_count}[/]"
    )


def daemon_started() -> None:
    """Log daemon startup complete."""
    info("Daemon started", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    """Log daemon shutdown complete."""
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def heartbeat(
    sample: Sample,
    ticks: int,
    served: int,
    persist_failures: int,
) -> None:
    """Log periodic heartbeat with the latest figures."""
    mem = sample.memory
    cpu_c = percent_color(sample.cpu_usage)
    mem_c = percent_color(mem.used_percentage)
    info(
        f"CPU [{cpu_c}]{sample.cpu_usage:.1f}%[/] {format_cores(sample.cpu_cores)} | "
        f"IO {sample.cpu_iowait:.1f}% | "
        f"MEM [{mem_c}]{mem.used_percentage:.1f}%[/] "
        f"[dim](A:{format_kb(mem.apps)} C:{format_kb(mem.cached)} "
        f"B:{format_kb(mem.buffers)} L:{format_kb(mem.slab)} S:{format_kb(mem.shmem)})[/] | "
        f"NET ↓{format_rate(sample.network_download)} ↑{format_rate(sample.network_upload)} "
        f"[dim]— {ticks} ticks, {served} served, {persist_failures} write errors[/]",
        Icon.HEARTBEAT,
    )


def tick_failed(error_msg: str) -> None:
    """Log a tick that raised unexpectedly."""
    error(f"Tick failed: {error_msg}", Icon.FAIL)


def socket_listening(path: str) -> None:
    """Log socket server ready."""
    info(f"Socket listening on [cyan]{path}[/]")


def socket_bind_failed(path: str, error_msg: str) -> None:
    """Log socket bind failure (daemon keeps sampling)."""
    warn(f"Socket unavailable at [cyan]{path}[/] — {error_msg}")


def socket_stopped() -> None:
    """Log socket server stopped."""
    info("Socket server stopped")


def already_running(pid: int | None = None) -> None:
    """Log daemon already running error."""
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def stale_pid(pid: int) -> None:
    """Log stale PID marker (process not found)."""
    info(f"[dim]Stale PID file — PID {pid} not running[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to a rotating log file.

    Both outputs use local time to match sample timestamps.

    Args:
        config: Application config with paths
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    # Set up rotating file handler for JSON output
    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    # Configure stdlib logging for file output
    # structlog will use this for JSON output via ProcessorFormatter
    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    # Add file handler with JSON formatter
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source("daemon"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console output is handled by Rich (see log functions above)
    # structlog only writes to JSON file for machine parsing

