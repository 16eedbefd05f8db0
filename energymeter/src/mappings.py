"""
Declarative capability mapping tables for the supported Eastron meters.

Each :class:`CapabilityMapping` ties one decoded register (``result_key``) to
one or more output metric names, with a validator deciding whether the
measurement is usable and a transform producing the metric value.  Validators
and transforms are built from two shared templates:

- ``make_validator``: always rejects the ``"xxx"`` sentinel, optionally also
  ``"-1"`` (current/voltage channels report -1 when no CT is connected).
- ``make_transform``: ``value * 10 ** scale``, optionally rounded to whole
  units (power channels, where sub-watt precision is noise).

Output metric value types are declared here, per mapping, rather than inferred
from whatever value the store currently holds.

CHANGELOG:
- 2026-10-16: Declare output value types per mapping
- 2026-10-12: Load-time check for mappings without a register definition
- 2026-10-09: Add SDM72 table
- 2026-10-05: Initial creation (SDM630, SDM120)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Literal

from energymeter.src.models import INVALID_NUMERIC_VALUE, INVALID_VALUE, Measurement, MetricValue
from energymeter.src.registers import RegisterDef

logger = logging.getLogger(__name__)

ValueType = Literal["number", "string", "boolean"]

Validator = Callable[[Measurement], bool]
Transform = Callable[[Measurement], MetricValue | None]


@dataclass(frozen=True, slots=True)
class CapabilityMapping:
    """Maps one decoded register onto one or more output metrics.

    Attributes:
        result_key: Register name in the model's register tables.
        output_metrics: Metric names that receive the transformed value.
        validate: Returns False when the measurement must be skipped.
        transform: Produces the metric value; ``None`` means skip.
        require_existing: Only update when the first output metric is already
            provisioned on the store.
        value_type: Declared type of the output metric value.
    """

    result_key: str
    output_metrics: tuple[str, ...]
    validate: Validator
    transform: Transform
    require_existing: bool = False
    value_type: ValueType = "number"


# ---------------------------------------------------------------------------
# Shared templates
# ---------------------------------------------------------------------------


def make_validator(reject_unconnected: bool = False) -> Validator:
    """Build a validator that rejects the sentinel (and optionally ``"-1"``)."""

    def _validate(measurement: Measurement) -> bool:
        if measurement.value == INVALID_VALUE:
            return False
        if reject_unconnected:
            return measurement.value != INVALID_NUMERIC_VALUE
        return True

    return _validate


def make_transform(round_result: bool = False) -> Transform:
    """Build a transform computing ``value * 10 ** scale``."""

    def _transform(measurement: Measurement) -> float | int:
        value = measurement.numeric()
        return round(value) if round_result else value

    return _transform


def _mapping(
    result_key: str,
    *metrics: str,
    reject_unconnected: bool = False,
    round_result: bool = False,
    require_existing: bool = False,
) -> CapabilityMapping:
    return CapabilityMapping(
        result_key=result_key,
        output_metrics=metrics,
        validate=make_validator(reject_unconnected),
        transform=make_transform(round_result),
        require_existing=require_existing,
    )


def cast_metric_value(value: object, value_type: ValueType) -> MetricValue:
    """Cast *value* to a metric's declared type.

    Raises:
        ValueError: If a number is requested and *value* is not numeric.
    """
    if value_type == "string":
        return str(value)
    if value_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1")
        return value is True or value == 1
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    return float(value)  # type: ignore[arg-type]


def check_mappings(
    mappings: Iterable[CapabilityMapping],
    registers: Iterable[RegisterDef],
) -> list[str]:
    """Return the result keys that match no register definition.

    Unmatched mappings are a configuration error but never fatal: they are
    logged here once at load time and simply never fire during polling.
    """
    known = {reg.name for reg in registers}
    unmatched = [m.result_key for m in mappings if m.result_key not in known]
    if unmatched:
        logger.warning(
            "Capability mappings without register definition (will be skipped): %s",
            ", ".join(unmatched),
        )
    return unmatched


# ---------------------------------------------------------------------------
# SDM630
# ---------------------------------------------------------------------------

SDM630_MAPPINGS: list[CapabilityMapping] = [
    _mapping("totsyspower", "measure_power", round_result=True),
    _mapping("l1_power", "meter_l1_power", round_result=True),
    _mapping("l2_power", "meter_l2_power", round_result=True),
    _mapping("l3_power", "meter_l3_power", round_result=True),
    _mapping("l1_current", "meter_l1_current", reject_unconnected=True),
    _mapping("l2_current", "meter_l2_current", reject_unconnected=True),
    _mapping("l3_current", "meter_l3_current", reject_unconnected=True),
    _mapping("sumlineamp", "meter_current", reject_unconnected=True),
    _mapping("l1_voltage", "meter_l1_voltage", reject_unconnected=True),
    _mapping("l2_voltage", "meter_l2_voltage", reject_unconnected=True),
    _mapping("l3_voltage", "meter_l3_voltage", reject_unconnected=True),
    _mapping("totpowerfact", "measure_tot_power_factor"),
    _mapping("totangle", "measure_tot_phase_angle"),
    _mapping("totalImEnergy", "meter_power.imported"),
    _mapping("totalExEnergy", "meter_power.exported"),
    _mapping("gridFrequency", "meter_frequency"),
]

# ---------------------------------------------------------------------------
# SDM120CT
# ---------------------------------------------------------------------------

SDM120_MAPPINGS: list[CapabilityMapping] = [
    _mapping("voltage", "measure_voltage", reject_unconnected=True),
    _mapping("current", "measure_current", reject_unconnected=True),
    _mapping("activepower", "measure_power", round_result=True),
    _mapping("apparentpower", "measure_apparent_power", round_result=True),
    _mapping("reactivepower", "measure_reactive_power", round_result=True),
    _mapping("powerfactor", "measure_power_factor"),
    _mapping("phaseangle", "measure_phase_angle"),
    _mapping("frequency", "meter_frequency"),
    _mapping("importactiveenergy", "meter_power.imported"),
    _mapping("exportactiveenergy", "meter_power.exported"),
    # Reactive energy is only reported on devices provisioned with it.
    _mapping("importreactiveenergy", "meter_reactive_energy.imported", require_existing=True),
    _mapping("exportreactiveenergy", "meter_reactive_energy.exported", require_existing=True),
    # Overwritten by net energy whenever both directions are readable.
    _mapping("totalactiveenergy", "meter_power"),
]

# ---------------------------------------------------------------------------
# SDM72D-M-2
# ---------------------------------------------------------------------------

SDM72_MAPPINGS: list[CapabilityMapping] = [
    _mapping("totsyspower", "measure_power", round_result=True),
    _mapping("l1_power", "meter_l1_power", round_result=True),
    _mapping("l2_power", "meter_l2_power", round_result=True),
    _mapping("l3_power", "meter_l3_power", round_result=True),
    _mapping("l1_current", "meter_l1_current", reject_unconnected=True),
    _mapping("l2_current", "meter_l2_current", reject_unconnected=True),
    _mapping("l3_current", "meter_l3_current", reject_unconnected=True),
    _mapping("l1_voltage", "meter_l1_voltage", reject_unconnected=True),
    _mapping("l2_voltage", "meter_l2_voltage", reject_unconnected=True),
    _mapping("l3_voltage", "meter_l3_voltage", reject_unconnected=True),
    _mapping("gridFrequency", "meter_frequency"),
    _mapping("totalImEnergy", "meter_power.imported"),
    _mapping("totalExEnergy", "meter_power.exported"),
    _mapping("totalEnergy", "meter_power.total"),
]
