"""Background daemon for ags-stats."""

import asyncio
import signal
from dataclasses import dataclass

import psutil
import structlog

from ags_stats import logging as console
from ags_stats.config import Config
from ags_stats.history import HistoryStore
from ags_stats.lifecycle import LifecycleGuard
from ags_stats.persister import Persister
from ags_stats.sampler import Sample, Sampler
from ags_stats.socket_server import SocketServer

log = structlog.get_logger()


def detect_core_count() -> int:
    """Logical core count at startup. Per-core history is sized from this once."""
    return psutil.cpu_count(logical=True) or 1


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    sample_count: int = 0
    last_sample: Sample | None = None

    def update_sample(self, sample: Sample) -> None:
        """Update state after a tick."""
        self.sample_count += 1
        self.last_sample = sample


class Daemon:
    """Main daemon class: sample -> record -> persist every tick, serve snapshots."""

    def __init__(self, config: Config, core_count: int | None = None):
        self.config = config
        self.state = DaemonState()

        self.guard = LifecycleGuard(config.pid_path)
        self.sampler = Sampler(
            config.sampler.proc_root,
            clamp_negative_rates=config.sampler.clamp_negative_rates,
        )
        self.store = HistoryStore(
            core_count=core_count if core_count is not None else detect_core_count(),
            capacity=config.system.history_size,
        )
        self.persister = Persister(config.history_path, config.latest_path)

        self._shutdown_event = asyncio.Event()
        self._socket_server: SocketServer | None = None

    async def start(self) -> None:
        """Start the daemon and run until shutdown.

        The singleton check runs before anything else; on conflict the
        process exits without touching the socket or data files.
        """
        self.guard.acquire_or_exit()

        from importlib.metadata import version

        log.info("daemon_starting", version=version("ags-stats"))
        console.version_info("ags-stats", version("ags-stats"))

        log.info(
            "daemon_config",
            sample_interval=self.config.system.sample_interval,
            history_size=self.store.capacity,
            core_count=self.store.core_count,
            proc_root=self.config.sampler.proc_root,
        )
        console.config_summary(
            self.config.system.sample_interval, self.store.capacity, self.store.core_count
        )

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        self.config.runtime_dir.mkdir(parents=True, exist_ok=True)

        # A bind failure only disables the socket; sampling carries on
        server = SocketServer(
            socket_path=self.config.socket_path,
            store=self.store,
            write_timeout=self.config.server.write_timeout,
        )
        if await server.start():
            self._socket_server = server

        self.state.running = True
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully.

        The PID marker is left in place; the next startup checks liveness.
        """
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        log.info("daemon_stopped", samples=self.state.sample_count)
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _tick(self) -> Sample:
        """One tick: sample, record, persist. Never overlaps with another tick."""
        sample = await self.sampler.sample()
        self.store.record(sample)
        self.persister.persist(self.store.snapshot(), sample)
        self.state.update_sample(sample)
        return sample

    def _heartbeat(self) -> None:
        sample = self.state.last_sample
        if sample is None:
            return
        served = self._socket_server.served_count if self._socket_server else 0
        log.info(
            "daemon_heartbeat",
            samples=self.state.sample_count,
            cpu=round(sample.cpu_usage, 1),
            iowait=round(sample.cpu_iowait, 1),
            mem=round(sample.memory.used_percentage, 1),
            down_kbs=round(sample.network_download, 1),
            up_kbs=round(sample.network_upload, 1),
            served=served,
            clients=self._socket_server.active_connections if self._socket_server else 0,
            persist_failures=self.persister.failures,
        )
        console.heartbeat(sample, self.state.sample_count, served, self.persister.failures)

    async def _main_loop(self) -> None:
        """Tick at the configured interval until shutdown.

        Sleep for the remainder of each interval so the tick rate stays fixed
        regardless of how long sampling took.
        """
        interval = self.config.system.sample_interval
        heartbeat_samples = self.config.system.heartbeat_samples
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            iteration_start = loop.time()
            try:
                await self._tick()
                if self.state.sample_count % heartbeat_samples == 0:
                    self._heartbeat()
            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break
            except Exception as e:
                log.exception("tick_failed", error=str(e))
                console.tick_failed(str(e))

            # Sleep for remaining interval (maintains consistent sample rate)
            sleep_time = interval - (loop.time() - iteration_start)
            if sleep_time > 0:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                    break  # Shutdown requested during sleep
                except TimeoutError:
                    pass  # Normal timeout, continue to next tick

    def request_shutdown(self) -> None:
        """Ask the main loop to exit after the current tick."""
        self._shutdown_event.set()


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    # Console via Rich, JSON Lines file via structlog
    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        if daemon.state.running:
            await daemon.stop()
