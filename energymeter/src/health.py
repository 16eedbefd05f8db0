"""
Health file writer for the meter daemon.

Writes a JSON health file at a configurable path with four fields:
- last_poll_ts: ISO timestamp of the most recent completed poll tick.
- last_success_ts: ISO timestamp of the most recent successful tick.
- consecutive_failures: Failed ticks since the last successful one.
- metrics_updated: Number of metric updates made by the last tick.

The file is rewritten after every tick, providing a simple liveness signal
that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-11: Track poll results instead of uploads
- 2026-10-07: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from energymeter.src.models import PollResult

logger = logging.getLogger(__name__)


class HealthWriter:
    """Writes meter health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_poll_ts: str | None = None
        self._last_success_ts: str | None = None
        self._consecutive_failures: int = 0
        self._metrics_updated: int = 0

    def record_result(self, result: PollResult) -> None:
        """Record one tick's outcome and write the health file.

        Skipped ticks are ignored.
        """
        if result.status == "skipped":
            return
        now = datetime.now(tz=UTC).isoformat()
        self._last_poll_ts = now
        self._metrics_updated = len(result.updates)
        if result.status == "ok":
            self._last_success_ts = now
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
        try:
            self._write()
        except OSError:
            logger.warning("Failed to write health file %s", self.path, exc_info=True)

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_poll_ts": self._last_poll_ts,
            "last_success_ts": self._last_success_ts,
            "consecutive_failures": self._consecutive_failures,
            "metrics_updated": self._metrics_updated,
        }
        self.path.write_text(json.dumps(data))
