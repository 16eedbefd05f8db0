"""
Daily baseline tracker: "since local midnight" counters from lifetime totals.

Eastron meters only expose lifetime import/export energy counters that never
reset.  A tracker captures the counter at the first valid reading of each local
calendar day (the baseline) and reports ``total - baseline`` for the rest of
that day.  Baseline and reset date are persisted through the capability store
so restarts during the day keep counting from the same baseline.

State machine per (meter, direction):

- UNINITIALIZED: no stored baseline or reset date.
- TRACKING: baseline and reset date set for today.
- On the first reading whose local date is after the stored reset date's local
  date (a calendar-day crossing, not a 24 h threshold) the tracker resets:
  baseline = total, reset date = now, daily value 0.

Same-day values are rounded to 2 decimals, clamped at 0, and only written when
they differ from the value currently reported.  Any failure is logged and makes
the reading a no-op; baseline and reset date are always written together.

Persisted keys (per meter): ``daily_import_baseline``,
``daily_export_baseline``, ``last_daily_reset_date`` and
``last_daily_reset_date_export``.  Models with a shared reset date keep both
directions' dates in ``last_daily_reset_date`` as ``{"import": ..., "export": ...}``.

CHANGELOG:
- 2026-10-19: Check the baseline explicitly instead of asserting it
- 2026-10-15: Compare local calendar dates in the configured time zone
- 2026-10-12: Split shared reset-date key per direction
- 2026-10-10: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, tzinfo
from typing import Any, Literal

from pydantic import ValidationError

from energymeter.src.meters import EXPORT_DAILY_METRIC, IMPORT_DAILY_METRIC
from energymeter.src.models import DailyBaselineState
from energymeter.src.store import CapabilityStore

logger = logging.getLogger(__name__)

Direction = Literal["import", "export"]

BASELINE_KEYS: dict[str, str] = {
    "import": "daily_import_baseline",
    "export": "daily_export_baseline",
}

RESET_DATE_KEYS: dict[str, str] = {
    "import": "last_daily_reset_date",
    "export": "last_daily_reset_date_export",
}

DAILY_METRICS: dict[str, str] = {
    "import": IMPORT_DAILY_METRIC,
    "export": EXPORT_DAILY_METRIC,
}


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class DailyBaselineTracker:
    """Derives a since-midnight counter for one energy direction.

    Args:
        store: Capability store holding the persisted state and daily metric.
        direction: ``"import"`` or ``"export"``.
        shared_reset_date: Keep the reset date inside the shared
            ``last_daily_reset_date`` key instead of a per-direction key.
        tz: Time zone defining local midnight; ``None`` uses the host zone.
        clock: Returns the current time (timezone-aware).  Injected in tests.
    """

    def __init__(
        self,
        store: CapabilityStore,
        direction: Direction,
        *,
        shared_reset_date: bool = False,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if direction not in BASELINE_KEYS:
            msg = f"direction must be 'import' or 'export', got {direction!r}"
            raise ValueError(msg)
        self._store = store
        self.direction = direction
        self.metric = DAILY_METRICS[direction]
        self.baseline_key = BASELINE_KEYS[direction]
        self._shared = shared_reset_date
        self.reset_date_key = (
            RESET_DATE_KEYS["import"] if shared_reset_date else RESET_DATE_KEYS[direction]
        )
        self._tz = tz
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def local_date(self, moment: datetime) -> date:
        """Calendar date of *moment* in the tracker's time zone."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return moment.astimezone(self._tz).date()

    def is_new_day(self, state: DailyBaselineState, now: datetime) -> bool:
        """True when no reset date is stored or it falls on an earlier local day."""
        if state.last_reset_date is None:
            return True
        return self.local_date(state.last_reset_date) < self.local_date(now)

    async def _read_reset_date(self) -> Any:
        raw = await self._store.get_persisted_value(self.reset_date_key)
        if self._shared and isinstance(raw, dict):
            return raw.get(self.direction)
        return raw

    async def _reset_date_payload(self, value: str | None) -> Any:
        if not self._shared:
            return value
        raw = await self._store.get_persisted_value(self.reset_date_key)
        if isinstance(raw, dict):
            parts = dict(raw)
        elif isinstance(raw, str):
            # Legacy single date: it applied to both directions.
            parts = {"import": raw, "export": raw}
        else:
            parts = {}
        parts[self.direction] = value
        return parts

    async def load_state(self) -> DailyBaselineState:
        """Read the persisted state; unparsable values count as uninitialized."""
        raw_date = await self._read_reset_date()
        raw_baseline = await self._store.get_persisted_value(self.baseline_key)
        try:
            return DailyBaselineState(last_reset_date=raw_date, baseline=raw_baseline)
        except ValidationError:
            logger.warning(
                "Daily %s: ignoring unreadable persisted state (date=%r, baseline=%r)",
                self.direction,
                raw_date,
                raw_baseline,
            )
            return DailyBaselineState()

    async def _write_state(self, baseline: float | None, reset_date: str | None) -> None:
        # Baseline first: a store without transactions that fails halfway
        # leaves an old reset date, which forces another reset next reading.
        await self._store.set_persisted_values(
            {
                self.baseline_key: baseline,
                self.reset_date_key: await self._reset_date_payload(reset_date),
            }
        )

    async def _ensure_metric(self) -> None:
        if not await self._store.has_metric(self.metric):
            await self._store.add_metric(self.metric)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(self, total: float) -> float | None:
        """Feed one valid lifetime counter reading.

        Args:
            total: Lifetime energy counter in kWh.

        Returns:
            The daily value now in effect, or ``None`` if the reading could
            not be processed.
        """
        try:
            now = self._clock()
            state = await self.load_state()
            await self._ensure_metric()

            baseline = state.baseline
            if baseline is None or not state.is_initialized or self.is_new_day(state, now):
                logger.info(
                    "Daily reset: new day detected, setting %s baseline to %s",
                    self.direction,
                    total,
                )
                await self._write_state(total, now.isoformat())
                await self._store.set_metric_value(self.metric, 0.0)
                return 0.0

            daily = round(total - baseline, 2)
            daily = daily if daily > 0 else 0.0
            logger.debug(
                "Daily %s: %s (total: %s, baseline: %s)",
                self.direction,
                daily,
                total,
                baseline,
            )

            current = await self._store.get_metric_value(self.metric)
            if current != daily:
                await self._store.set_metric_value(self.metric, daily)
            return daily
        except Exception:
            logger.error("Error calculating daily %s energy", self.direction, exc_info=True)
            return None

    async def initialize(self) -> None:
        """Prepare the daily metric at start-up.

        Keeps a baseline captured earlier today; clears a stale or missing one
        so the next reading starts a new day at 0.
        """
        try:
            await self._ensure_metric()
            state = await self.load_state()
            if state.is_initialized and not self.is_new_day(state, self._clock()):
                current = await self._store.get_metric_value(self.metric)
                logger.info("Same day: keeping %s at %s", self.metric, current or 0)
                return
            await self.clear()
            await self._store.set_metric_value(self.metric, 0.0)
            logger.info("New day: reset %s to 0 and cleared baseline", self.metric)
        except Exception:
            logger.error("Error initializing %s", self.metric, exc_info=True)

    async def clear(self) -> None:
        """Forget baseline and reset date (device re-pairing)."""
        await self._write_state(None, None)
