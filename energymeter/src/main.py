"""
Meter daemon entrypoint.

Loads :class:`MeterSettings` from the environment, opens the SQLite capability
store, and runs one :class:`MeterDevice` until SIGTERM/SIGINT.  On shutdown the
poll timer is stopped, the running tick is awaited, and the store is closed.

Structured JSON logging is used for all events.  A HealthWriter records every
tick's outcome in a JSON health file.

CHANGELOG:
- 2026-10-11: Replace poll/upload loops with the device timer
- 2026-10-07: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from energymeter.src.config import MeterSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stderr for the root logger.

    Args:
        level: Root log level name; unknown names fall back to INFO.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: MeterSettings) -> None:
    """Log the effective configuration at startup."""
    logger.info(
        "Meter daemon starting with config: "
        "meter_address=%s, meter_port=%s, meter_id=%s, meter_model=%s, "
        "polling_interval=%s, tick_timeout_s=%s, request_timeout_s=%s, "
        "device_id=%s, device_name=%s, timezone=%s, store_path=%s, health_path=%s",
        settings.meter_address,
        settings.meter_port,
        settings.meter_id,
        settings.meter_model,
        settings.polling_interval,
        settings.tick_timeout_s,
        settings.request_timeout_s,
        settings.device_id,
        settings.device_name,
        settings.timezone or "local",
        settings.store_path,
        settings.health_path,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def run_device(
    settings: MeterSettings,
    shutdown_event: asyncio.Event,
) -> None:
    """Run one meter device against the SQLite store until shutdown.

    Args:
        settings: Meter configuration.
        shutdown_event: Set to stop polling and exit.
    """
    from energymeter.src.device import MeterDevice
    from energymeter.src.health import HealthWriter
    from energymeter.src.store import SqliteCapabilityStore

    health = HealthWriter(settings.health_path)

    async with SqliteCapabilityStore(
        settings.store_path,
        device_id=settings.device_id,
        device_name=settings.device_name,
    ) as store:
        device = MeterDevice(settings, store, on_poll=health.record_result)
        await device.start()
        try:
            await shutdown_event.wait()
        finally:
            await device.delete()
    logger.info("Shutdown complete")


async def async_main() -> None:
    """Async entrypoint: load config, build components, run until signalled.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from energymeter.src.config import MeterSettings

    settings = MeterSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    await run_device(settings, shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the meter daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
