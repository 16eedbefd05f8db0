"""
Pydantic models for decoded measurements, metric updates and poll results.

A :class:`Measurement` is produced fresh for every register on every poll and
is never persisted.  Its ``value`` is either a decimal literal or the invalid
sentinel ``"xxx"``; ``scale`` is a decimal exponent string (empty means 0).

CHANGELOG:
- 2026-10-11: Add DailyBaselineState for persisted daily counters
- 2026-10-05: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

INVALID_VALUE = "xxx"
"""Sentinel for a register that could not be read or decoded."""

INVALID_NUMERIC_VALUE = "-1"
"""Value reported by current/voltage channels when no CT is connected."""

MetricValue = float | int | str | bool


class Measurement(BaseModel):
    """A single decoded register value.

    Attributes:
        value: Decimal literal, decoded text, or :data:`INVALID_VALUE`.
        scale: Power-of-ten exponent as a string; empty means ``"0"``.
        label: Register label from the static register table.
    """

    model_config = ConfigDict(frozen=True)

    value: str = INVALID_VALUE
    scale: str = "0"
    label: str = ""

    @property
    def is_valid(self) -> bool:
        """False when the register could not be read or decoded."""
        return self.value != INVALID_VALUE

    def numeric(self) -> float:
        """Return ``value * 10 ** scale``.

        Raises:
            ValueError: If value or scale is not numeric (including the
                sentinel).
        """
        return float(self.value) * 10 ** int(self.scale or 0)


class MetricUpdate(BaseModel):
    """One metric value reported to the capability store."""

    model_config = ConfigDict(frozen=True)

    metric: str
    value: MetricValue


class DailyBaselineState(BaseModel):
    """Persisted start-of-day state for one energy direction.

    Attributes:
        last_reset_date: Moment the baseline was captured, or ``None`` before
            the first valid reading.
        baseline: Lifetime counter value captured at that moment.
    """

    last_reset_date: datetime | None = None
    baseline: float | None = None

    @property
    def is_initialized(self) -> bool:
        return self.last_reset_date is not None and self.baseline is not None


class PollResult(BaseModel):
    """Outcome of a single poll tick.

    Attributes:
        status: ``"ok"`` when the tick completed (possibly degraded),
            ``"failed"`` when connecting or reading aborted the tick, and
            ``"skipped"`` when another tick was still in flight.
        measurements: Merged input and holding register measurements.
        updates: Metric updates that were emitted.
        degraded: True when a transport error interrupted reading; daily
            counters were left untouched.
        error: Short description of the failure, if any.
    """

    status: Literal["ok", "failed", "skipped"]
    measurements: dict[str, Measurement] = Field(default_factory=dict)
    updates: list[MetricUpdate] = Field(default_factory=list)
    degraded: bool = False
    error: str | None = None
