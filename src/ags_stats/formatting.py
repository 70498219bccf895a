"""Formatting utilities for consistent output across CLI and console logs."""

import time


def format_kb(kb: float) -> str:
    """Format a kernel kB figure compactly.

    Returns:
        "512K", "1.5M" or "3.2G" depending on magnitude
    """
    if abs(kb) >= 1024 * 1024:
        return f"{kb / 1024 / 1024:.1f}G"
    if abs(kb) >= 1024:
        return f"{kb / 1024:.1f}M"
    return f"{kb:.0f}K"


def format_rate(kb_per_s: float) -> str:
    """Format a network rate given in KB/s."""
    if abs(kb_per_s) >= 1024:
        return f"{kb_per_s / 1024:.1f} MB/s"
    return f"{kb_per_s:.1f} KB/s"


def format_cores(cores: tuple[float, ...] | list[float]) -> str:
    """Summarize per-core usage.

    Up to four cores are listed in full; beyond that only the first two and
    last two are shown.
    """
    if len(cores) <= 4:
        return "[" + ",".join(f"{c:.1f}" for c in cores) + "]"
    return f"[{cores[0]:.1f},{cores[1]:.1f}...{cores[-2]:.1f},{cores[-1]:.1f}]"


def format_age(timestamp_ms: int, *, now: float | None = None) -> str:
    """Format how long ago a millisecond timestamp was.

    Args:
        timestamp_ms: Milliseconds since epoch, 0 meaning never
        now: Current time in seconds (defaults to time.time())

    Returns:
        "never", "3s ago", "4m ago" or "2h ago"
    """
    if timestamp_ms <= 0:
        return "never"
    if now is None:
        now = time.time()
    age = max(now - timestamp_ms / 1000, 0.0)
    if age < 60:
        return f"{age:.0f}s ago"
    if age < 3600:
        return f"{age / 60:.0f}m ago"
    return f"{age / 3600:.0f}h ago"
