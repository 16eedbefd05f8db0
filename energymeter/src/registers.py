"""
Eastron SDM meter Modbus register maps -- single source of truth.

Defines the register address, word length, encoding, label and decimal scale
exponent for every register read from the supported Eastron meters.  All
measurement registers are input registers (function code 0x04) holding IEEE-754
float32 values in big-endian word order.  Holding registers (function code 0x03)
are listed per model for configuration values; the shipped models read none.

References:
    - Eastron SDM630 Modbus Protocol V1.8
    - Eastron SDM120CT Modbus Protocol V2.4
    - Eastron SDM72D-M-2 Modbus Protocol V1.3

CHANGELOG:
- 2026-10-09: Add SDM72D-M-2 register map
- 2026-10-05: Initial creation (SDM630, SDM120CT)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Encodings
# ---------------------------------------------------------------------------

UINT16 = "UINT16"
INT16 = "INT16"
UINT16LE = "UINT16LE"
INT16LE = "INT16LE"
UINT32 = "UINT32"
INT32 = "INT32"
FLOAT32 = "FLOAT32"
SCALE = "SCALE"
STRING = "STRING"

ENCODINGS: frozenset[str] = frozenset(
    {UINT16, INT16, UINT16LE, INT16LE, UINT32, INT32, FLOAT32, SCALE, STRING}
)
"""Every encoding the decoder understands."""

_DEFAULT_WORD_LENGTHS: dict[str, int] = {
    UINT16: 1,
    INT16: 1,
    UINT16LE: 1,
    INT16LE: 1,
    SCALE: 1,
    UINT32: 2,
    INT32: 2,
    FLOAT32: 2,
}

MAX_WORDS_PER_READ = 125
"""Modbus limit on registers per read request."""


# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a single Modbus register.

    Attributes:
        name: Unique identifier used as the measurement key.
        address: Zero-based Modbus register start address.
        encoding: One of :data:`ENCODINGS`.  Anything else is accepted but
            always decodes to the invalid sentinel.
        label: Human-readable description from the meter manual.
        scale_exponent: Power-of-ten multiplier applied to the decoded value
            (``-1`` means tenths of the unit).
        word_length: Number of 16-bit words to read.  Derived from
            *encoding* when not set; STRING and unknown encodings must set it.
    """

    name: str
    address: int
    encoding: str
    label: str = ""
    scale_exponent: int = 0
    word_length: int = field(default=0)

    def __post_init__(self) -> None:  # noqa: D105
        if self.word_length == 0:
            wl = _DEFAULT_WORD_LENGTHS.get(self.encoding)
            if wl is None:
                msg = (
                    f"Register '{self.name}': word_length must be set "
                    f"explicitly for encoding '{self.encoding}'"
                )
                raise ValueError(msg)
            # frozen=True requires object.__setattr__
            object.__setattr__(self, "word_length", wl)
        if not 0 <= self.address <= 0xFFFF:
            msg = f"Register '{self.name}': address {self.address} out of range"
            raise ValueError(msg)
        if not 1 <= self.word_length <= MAX_WORDS_PER_READ:
            msg = f"Register '{self.name}': word_length {self.word_length} out of range"
            raise ValueError(msg)
        if not -128 <= self.scale_exponent <= 127:
            msg = f"Register '{self.name}': scale_exponent {self.scale_exponent} out of range"
            raise ValueError(msg)


def register_index(registers: list[RegisterDef]) -> dict[str, RegisterDef]:
    """Build a name -> definition lookup, rejecting duplicate names."""
    index: dict[str, RegisterDef] = {}
    for reg in registers:
        if reg.name in index:
            msg = f"Duplicate register name '{reg.name}'"
            raise ValueError(msg)
        index[reg.name] = reg
    return index


def _f32(name: str, address: int, label: str) -> RegisterDef:
    return RegisterDef(name=name, address=address, encoding=FLOAT32, label=label)


# ---------------------------------------------------------------------------
# SDM630 three-phase meter (input registers 0-75)
# ---------------------------------------------------------------------------

SDM630_INPUT_REGISTERS: list[RegisterDef] = [
    _f32("l1_voltage", 0, "Phase 1 Voltage"),
    _f32("l2_voltage", 2, "Phase 2 Voltage"),
    _f32("l3_voltage", 4, "Phase 3 Voltage"),
    _f32("l1_current", 6, "Phase 1 Current"),
    _f32("l2_current", 8, "Phase 2 Current"),
    _f32("l3_current", 10, "Phase 3 Current"),
    _f32("l1_power", 12, "Phase 1 Power"),
    _f32("l2_power", 14, "Phase 2 Power"),
    _f32("l3_power", 16, "Phase 3 Power"),
    _f32("sumlineamp", 48, "Sum of Line Currents"),
    _f32("totsyspower", 52, "Total System Power"),
    _f32("totsyspowerVA", 56, "System Apparent Power"),
    _f32("totsyspowerVAr", 60, "Total System Reactive Power"),
    _f32("totpowerfact", 62, "Total Power Factor"),
    _f32("totangle", 66, "Total Phase Angle"),
    _f32("gridFrequency", 70, "Frequency of supply voltages"),
    _f32("totalImEnergy", 72, "Total Import Energy"),
    _f32("totalExEnergy", 74, "Total Export Energy"),
]

SDM630_HOLDING_REGISTERS: list[RegisterDef] = []

# ---------------------------------------------------------------------------
# SDM120CT single-phase meter
# ---------------------------------------------------------------------------

SDM120_INPUT_REGISTERS: list[RegisterDef] = [
    _f32("voltage", 0, "Voltage"),
    _f32("current", 6, "Current"),
    _f32("activepower", 12, "Active Power"),
    _f32("apparentpower", 18, "Apparent Power"),
    _f32("reactivepower", 24, "Reactive Power"),
    _f32("powerfactor", 30, "Power Factor"),
    _f32("phaseangle", 36, "Phase Angle"),
    _f32("frequency", 70, "Frequency"),
    _f32("importactiveenergy", 72, "Import Active Energy"),
    _f32("exportactiveenergy", 74, "Export Active Energy"),
    _f32("importreactiveenergy", 76, "Import Reactive Energy"),
    _f32("exportreactiveenergy", 78, "Export Reactive Energy"),
    _f32("totalactiveenergy", 342, "Total Active Energy"),
    _f32("totalreactiveenergy", 344, "Total Reactive Energy"),
]

SDM120_HOLDING_REGISTERS: list[RegisterDef] = []

# ---------------------------------------------------------------------------
# SDM72D-M-2 three-phase DIN-rail meter
# ---------------------------------------------------------------------------

SDM72_INPUT_REGISTERS: list[RegisterDef] = [
    _f32("l1_voltage", 0, "Phase 1 Voltage"),
    _f32("l2_voltage", 2, "Phase 2 Voltage"),
    _f32("l3_voltage", 4, "Phase 3 Voltage"),
    _f32("l1_current", 6, "Phase 1 Current"),
    _f32("l2_current", 8, "Phase 2 Current"),
    _f32("l3_current", 10, "Phase 3 Current"),
    _f32("l1_power", 12, "Phase 1 Power"),
    _f32("l2_power", 14, "Phase 2 Power"),
    _f32("l3_power", 16, "Phase 3 Power"),
    _f32("totsyspower", 52, "Total System Power"),
    _f32("gridFrequency", 70, "Frequency of supply voltages"),
    _f32("totalImEnergy", 72, "Total Import Energy"),
    _f32("totalExEnergy", 74, "Total Export Energy"),
    _f32("totalEnergy", 342, "Total Active Energy"),
]

SDM72_HOLDING_REGISTERS: list[RegisterDef] = []
