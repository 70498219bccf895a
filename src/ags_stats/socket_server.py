# src/ags_stats/socket_server.py
"""Unix socket server handing out history snapshots.

ONE-SHOT DESIGN:
- Each connection gets exactly one message: the full HistorySnapshot as JSON
- Nothing is read from the client
- The server closes the connection after the write
"""

from __future__ import annotations

import asyncio
import os
import stat
from collections.abc import Awaitable
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from ags_stats import logging as console

if TYPE_CHECKING:
    from ags_stats.history import HistoryStore

log = structlog.get_logger()


class SocketServer:
    """Unix domain socket server for graph widgets and the CLI.

    The snapshot is copied out of the store before any socket I/O, so a slow
    client never holds up the tick driver. Draining is bounded by
    write_timeout so a client that never reads cannot pin a handler forever.
    """

    def __init__(
        self,
        socket_path: Path,
        store: HistoryStore,
        write_timeout: float = 5.0,
    ) -> None:
        self.socket_path = socket_path
        self.store = store
        self.write_timeout = write_timeout
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self.served_count = 0
        self.failed_count = 0

    @property
    def running(self) -> bool:
        """Whether the listener is bound."""
        return self._server is not None

    @property
    def active_connections(self) -> int:
        """Connections currently being written to."""
        return len(self._clients)

    async def start(self) -> bool:
        """Bind the socket and start accepting.

        Returns False (and logs) if the socket cannot be bound. The caller
        keeps running without a server in that case.
        """
        try:
            # Remove stale socket file
            if self.socket_path.exists() or self.socket_path.is_symlink():
                self.socket_path.unlink()

            self.socket_path.parent.mkdir(parents=True, exist_ok=True)

            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
            )

            # Widgets may run as a different user than the daemon
            os.chmod(self.socket_path, stat.S_IRWXU | stat.S_IRWXG | stat.S_IRWXO)
        except OSError as e:
            log.error("socket_bind_failed", path=str(self.socket_path), error=str(e))
            console.socket_bind_failed(str(self.socket_path), str(e))
            if self._server is not None:
                self._server.close()
                self._server = None
            return False

        log.info("socket_server_started", path=str(self.socket_path))
        console.socket_listening(str(self.socket_path))
        return True

    async def stop(self) -> None:
        """Stop accepting, drop open connections and remove the socket file."""
        for writer in list(self._clients):
            writer.transport.abort()
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

            if self.socket_path.exists():
                self.socket_path.unlink()

            log.info("socket_server_stopped")
            console.socket_stopped()

    def _bounded(self, aw: Awaitable[None]) -> Awaitable[None]:
        """Apply write_timeout to a socket wait (0 means no limit)."""
        if self.write_timeout > 0:
            return asyncio.wait_for(aw, timeout=self.write_timeout)
        return aw

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Send one snapshot and close."""
        self._clients.add(writer)
        sent = False
        try:
            # Copy out under the store lock; the lock is released before writing
            payload = self.store.snapshot().to_json().encode()
            writer.write(payload)
            await self._bounded(writer.drain())
            # An aborted transport wakes drain() without an error
            if writer.transport.is_closing():
                raise ConnectionResetError("connection closed before snapshot was sent")
            sent = True
            self.served_count += 1
        except TimeoutError:
            self.failed_count += 1
            log.warning("socket_client_write_timeout", timeout=self.write_timeout)
        except (ConnectionError, OSError) as e:
            self.failed_count += 1
            log.warning("socket_client_write_failed", error=str(e))
        finally:
            await self._close(writer, graceful=sent)
            self._clients.discard(writer)

    async def _close(self, writer: asyncio.StreamWriter, graceful: bool) -> None:
        """Close a client connection.

        A failed send is aborted: close() would wait for the unsent buffer to
        flush to a peer that is not reading. A graceful close that cannot
        finish within write_timeout is aborted too.
        """
        if not graceful:
            writer.transport.abort()
        else:
            writer.close()
        try:
            await self._bounded(writer.wait_closed())
        except TimeoutError:
            log.warning("socket_client_close_timeout", timeout=self.write_timeout)
            writer.transport.abort()
        except (ConnectionError, OSError):
            pass
