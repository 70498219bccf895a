# src/ags_stats/socket_client.py

"""Read-only access to the daemon's snapshot socket and data files."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from ags_stats.history import HistorySnapshot
from ags_stats.sampler import Sample

if TYPE_CHECKING:
    from ags_stats.config import Config

HistorySource = Literal["auto", "socket", "file"]


class SocketClient:
    """Unix domain socket client for history snapshots.

    Simple and stateless: one connection per fetch, connects or throws.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path

    async def fetch_raw(self, timeout: float = 2.0) -> dict:
        """Connect, read until the server closes, and parse the JSON document.

        Raises:
            FileNotFoundError: If socket doesn't exist (daemon not running)
            ConnectionError: If the server closed without sending anything
            TimeoutError: If the full reply did not arrive within timeout
            json.JSONDecodeError: If the reply is invalid JSON
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        try:
            data = await asyncio.wait_for(reader.read(), timeout=timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        if not data:
            raise ConnectionError("Connection closed by server without data")

        return json.loads(data.decode())

    async def fetch(self, timeout: float = 2.0) -> HistorySnapshot:
        """Fetch and decode one snapshot."""
        return HistorySnapshot.from_dict(await self.fetch_raw(timeout=timeout))


def read_history_file(path: Path) -> HistorySnapshot:
    """Read the history file written by the daemon.

    Raises:
        FileNotFoundError: If the daemon has never written it
        json.JSONDecodeError: If the file is truncated mid-write
    """
    return HistorySnapshot.from_json(path.read_text(encoding="utf-8"))


def load_history(
    config: Config,
    source: HistorySource = "auto",
    timeout: float = 2.0,
) -> tuple[HistorySnapshot, str]:
    """Load the current history, preferring the socket.

    With source="auto" any socket failure falls back to the history file.

    Returns:
        (snapshot, "socket" | "file")
    """
    if source in ("auto", "socket"):
        client = SocketClient(config.socket_path)
        try:
            return asyncio.run(client.fetch(timeout=timeout)), "socket"
        except (OSError, TimeoutError, ValueError):
            if source == "socket":
                raise

    return read_history_file(config.history_path), "file"


def load_latest(config: Config) -> Sample:
    """Read the latest-sample file written by the daemon."""
    data = json.loads(config.latest_path.read_text(encoding="utf-8"))
    return Sample.from_dict(data)
