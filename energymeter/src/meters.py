"""
Meter model registry.

A :class:`MeterModel` bundles everything that differs between supported
meters -- register tables, capability mappings, which registers carry the
lifetime import/export totals, and how the daily reset date is stored -- so
that a single poll/mapping/daily-counter core serves every model.

CHANGELOG:
- 2026-10-12: Run the mapping check when a model is defined
- 2026-10-09: Add SDM72; make shared reset-date key a model flag
- 2026-10-05: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from energymeter.src.mappings import (
    SDM72_MAPPINGS,
    SDM120_MAPPINGS,
    SDM630_MAPPINGS,
    CapabilityMapping,
    ValueType,
    check_mappings,
)
from energymeter.src.registers import (
    SDM72_HOLDING_REGISTERS,
    SDM72_INPUT_REGISTERS,
    SDM120_HOLDING_REGISTERS,
    SDM120_INPUT_REGISTERS,
    SDM630_HOLDING_REGISTERS,
    SDM630_INPUT_REGISTERS,
    RegisterDef,
    register_index,
)

NET_ENERGY_METRIC = "meter_power"
IMPORT_DAILY_METRIC = "meter_power_import_daily"
EXPORT_DAILY_METRIC = "meter_power_export_daily"


@dataclass(frozen=True, slots=True)
class MeterModel:
    """Static configuration of one meter model.

    Attributes:
        name: Model identifier (lowercase, e.g. ``"sdm630"``).
        input_registers: Registers read with function code 0x04.
        holding_registers: Registers read with function code 0x03; also the
            only registers the write path may target.
        mappings: Capability mappings applied in declaration order.
        import_energy_key: Register holding the lifetime import total.
        export_energy_key: Register holding the lifetime export total.
        shared_reset_date: Store one reset date for both directions (legacy
            SDM630 layout) instead of one per direction.
    """

    name: str
    input_registers: tuple[RegisterDef, ...]
    holding_registers: tuple[RegisterDef, ...]
    mappings: tuple[CapabilityMapping, ...]
    import_energy_key: str
    export_energy_key: str
    shared_reset_date: bool = False

    def __post_init__(self) -> None:  # noqa: D105
        # Raises on duplicate names within a table.
        register_index(list(self.input_registers))
        register_index(list(self.holding_registers))
        check_mappings(self.mappings, self.all_registers)

    @property
    def all_registers(self) -> tuple[RegisterDef, ...]:
        return self.input_registers + self.holding_registers

    def find_mapping(self, metric: str) -> CapabilityMapping | None:
        """Return the first mapping that outputs *metric*."""
        for mapping in self.mappings:
            if metric in mapping.output_metrics:
                return mapping
        return None

    def metric_value_type(self, metric: str) -> ValueType:
        """Declared value type of *metric*; derived metrics are numbers."""
        mapping = self.find_mapping(metric)
        return mapping.value_type if mapping is not None else "number"


SDM630 = MeterModel(
    name="sdm630",
    input_registers=tuple(SDM630_INPUT_REGISTERS),
    holding_registers=tuple(SDM630_HOLDING_REGISTERS),
    mappings=tuple(SDM630_MAPPINGS),
    import_energy_key="totalImEnergy",
    export_energy_key="totalExEnergy",
    shared_reset_date=True,
)

SDM120 = MeterModel(
    name="sdm120",
    input_registers=tuple(SDM120_INPUT_REGISTERS),
    holding_registers=tuple(SDM120_HOLDING_REGISTERS),
    mappings=tuple(SDM120_MAPPINGS),
    import_energy_key="importactiveenergy",
    export_energy_key="exportactiveenergy",
)

SDM72 = MeterModel(
    name="sdm72",
    input_registers=tuple(SDM72_INPUT_REGISTERS),
    holding_registers=tuple(SDM72_HOLDING_REGISTERS),
    mappings=tuple(SDM72_MAPPINGS),
    import_energy_key="totalImEnergy",
    export_energy_key="totalExEnergy",
)

METER_MODELS: dict[str, MeterModel] = {m.name: m for m in (SDM630, SDM120, SDM72)}
"""Supported meter models by name."""


def get_meter_model(name: str) -> MeterModel:
    """Look up a meter model by case-insensitive name.

    Raises:
        KeyError: If the model is not supported.
    """
    try:
        return METER_MODELS[name.strip().lower()]
    except KeyError:
        supported = ", ".join(sorted(METER_MODELS))
        raise KeyError(f"Unknown meter model '{name}' (supported: {supported})") from None
