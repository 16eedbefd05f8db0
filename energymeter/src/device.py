"""
Meter device lifecycle and poll scheduler.

A :class:`MeterDevice` is one configured meter instance.  It owns the poll
orchestrator (and through it both daily trackers) plus a fixed-rate timer:

- ``start()`` prepares the daily metrics and starts the timer.  The first poll
  runs immediately, then one every ``polling_interval`` seconds.
- The timer never waits for a tick to finish before starting the next one;
  overlapping ticks are dropped by the orchestrator's in-flight guard.
- ``apply_settings()`` applies connection changes from the next tick on and
  restarts the timer when the polling interval changes.
- ``delete()`` stops the timer, waits for running ticks and refuses new ones.

CHANGELOG:
- 2026-10-19: Skip missed slots after a loop stall instead of bursting
- 2026-10-17: Restart timer on polling interval change
- 2026-10-14: Fixed-rate timer replaces the sleep-after-poll loop
- 2026-10-08: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

from energymeter.src.config import MeterSettings
from energymeter.src.meters import MeterModel
from energymeter.src.models import MetricValue, PollResult
from energymeter.src.poller import PollOrchestrator
from energymeter.src.store import CapabilityStore

logger = logging.getLogger(__name__)

OnPoll = Callable[[PollResult], Awaitable[None] | None]

_CONNECTION_KEYS = frozenset({"meter_address", "meter_port", "meter_id"})


class MeterDevice:
    """One meter instance: orchestrator, daily trackers and poll timer.

    Args:
        settings: Meter configuration.
        store: Capability store for metrics and persisted state.
        model: Meter model; defaults to the one named in *settings*.
        on_poll: Called with every tick's result (e.g. the health writer).
        clock: Current-time source for the daily trackers (tests).
    """

    def __init__(
        self,
        settings: MeterSettings,
        store: CapabilityStore,
        model: MeterModel | None = None,
        *,
        on_poll: OnPoll | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.orchestrator = PollOrchestrator(
            settings=settings,
            store=store,
            model=model,
            clock=clock,
        )
        self._on_poll = on_poll
        self._timer: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[PollResult]] = set()
        self.timer_interval: float | None = None
        self._deleted = False

    @property
    def model(self) -> MeterModel:
        return self.orchestrator.model

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self) -> None:
        """Initialize the daily metrics and start polling."""
        logger.info(
            "Meter '%s' (%s) has been initialized: %s:%d unit %d",
            self.store.device_name,
            self.model.name,
            self.settings.meter_address,
            self.settings.meter_port,
            self.settings.meter_id,
        )
        await self.orchestrator.import_tracker.initialize()
        await self.orchestrator.export_tracker.initialize()
        self.restart_polling()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def restart_polling(self) -> None:
        """(Re)start the poll timer with the current polling interval."""
        if self._deleted:
            return
        self._cancel_timer()
        interval = float(self.settings.polling_interval)
        self.timer_interval = interval
        self._timer = asyncio.create_task(self._timer_loop(interval))
        logger.info("Polling '%s' every %ss", self.store.device_name, interval)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _timer_loop(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        next_fire = loop.time()
        while True:
            self.trigger_poll()
            next_fire += interval
            now = loop.time()
            if next_fire <= now:
                # Loop stalled past one or more slots: skip them, no catch-up burst.
                missed = int((now - next_fire) // interval) + 1
                logger.warning(
                    "Poll timer for '%s' fell behind, skipping %d tick(s)",
                    self.store.device_name,
                    missed,
                )
                next_fire += missed * interval
            await asyncio.sleep(next_fire - now)

    def trigger_poll(self) -> asyncio.Task[PollResult]:
        """Start one poll tick in the background and return its task."""
        task = asyncio.create_task(self._run_tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def _run_tick(self) -> PollResult:
        result = await self.orchestrator.poll()
        if self._on_poll is not None and result.status != "skipped":
            try:
                outcome = self._on_poll(result)
                if outcome is not None:
                    await outcome
            except Exception:
                logger.warning("on_poll callback failed", exc_info=True)
        return result

    # ------------------------------------------------------------------
    # Settings / control
    # ------------------------------------------------------------------

    def apply_settings(
        self,
        new_settings: MeterSettings,
        changed_keys: Iterable[str] | None = None,
    ) -> set[str]:
        """Apply changed settings to the running device.

        Args:
            new_settings: The complete new configuration.
            changed_keys: Names of the fields that changed; computed from the
                current settings when omitted.

        Returns:
            The set of changed field names.
        """
        old = self.settings
        if changed_keys is None:
            changed = {
                name
                for name in type(new_settings).model_fields
                if getattr(old, name) != getattr(new_settings, name)
            }
        else:
            changed = set(changed_keys)

        self.settings = new_settings
        self.orchestrator.update_settings(new_settings)

        if changed & _CONNECTION_KEYS:
            logger.info(
                "Connection settings changed (%s), applied from next poll",
                ", ".join(sorted(changed & _CONNECTION_KEYS)),
            )
        if "polling_interval" in changed:
            logger.info(
                "Polling interval changed from %s to %s seconds",
                old.polling_interval,
                new_settings.polling_interval,
            )
            if self.running:
                self.restart_polling()
        return changed

    async def update_control(self, metric: str, value: MetricValue) -> bool:
        """Write *metric* to the meter; see :meth:`PollOrchestrator.update_control`."""
        return await self.orchestrator.update_control(metric, value)

    async def reset_daily_state(self) -> None:
        """Forget both daily baselines (device re-pairing)."""
        await self.orchestrator.import_tracker.clear()
        await self.orchestrator.export_tracker.clear()
        logger.info("Cleared daily baselines for '%s'", self.store.device_name)

    async def delete(self) -> None:
        """Stop polling for good and wait for in-flight ticks."""
        self._deleted = True
        timer = self._timer
        self._cancel_timer()
        if timer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await timer
        self.orchestrator.stop()
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        logger.info("Meter '%s' has been deleted", self.store.device_name)
