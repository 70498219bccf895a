"""Per-tick JSON files for consumers that cannot reach the socket."""

from pathlib import Path

import structlog

from ags_stats.history import HistorySnapshot
from ags_stats.sampler import Sample

log = structlog.get_logger()


class Persister:
    """Overwrites the history and latest-sample files in place every tick.

    Write failures are logged and counted, never raised.
    """

    def __init__(self, history_path: Path, latest_path: Path) -> None:
        self.history_path = history_path
        self.latest_path = latest_path
        self.failures = 0

    def _write(self, kind: str, path: Path, payload: str) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(payload, encoding="utf-8")
        except OSError as e:
            self.failures += 1
            log.warning("persist_failed", kind=kind, path=str(path), error=str(e))
            return False
        return True

    def persist(self, snapshot: HistorySnapshot, latest: Sample) -> bool:
        """Write both files. Returns True only if both writes succeeded."""
        history_ok = self._write("history", self.history_path, snapshot.to_json(indent=2))
        latest_ok = self._write("latest", self.latest_path, latest.to_json(indent=2))
        return history_ok and latest_ok
