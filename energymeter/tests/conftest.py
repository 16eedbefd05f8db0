"""
Shared test fixtures for meter daemon tests.

Provides environment variable fixtures for MeterSettings, an in-memory
capability store, a controllable clock for the daily trackers, and a small
meter model with writable holding registers.  All meter env vars are cleaned
before each test to ensure isolation.

CHANGELOG:
- 2026-10-19: Add a 0.01-scaled holding register to the writable model
- 2026-10-16: Add writable test model for the control write path
- 2026-10-07: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from energymeter.src.config import MeterSettings
from energymeter.src.mappings import CapabilityMapping, make_transform, make_validator
from energymeter.src.meters import MeterModel
from energymeter.src.registers import FLOAT32, UINT16, RegisterDef
from energymeter.src.store import MemoryCapabilityStore

# All MeterSettings environment variable names, used for cleanup.
_ALL_METER_ENV_VARS = (
    "METER_ADDRESS",
    "METER_PORT",
    "METER_ID",
    "POLLING_INTERVAL",
    "METER_MODEL",
    "TICK_TIMEOUT_S",
    "REQUEST_TIMEOUT_S",
    "DEVICE_ID",
    "DEVICE_NAME",
    "TIMEZONE",
    "STORE_PATH",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_meter_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all meter env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_METER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all environment variables for MeterSettings."""
    env = {
        "METER_ADDRESS": "192.168.1.60",
        "METER_PORT": "5020",
        "METER_ID": "3",
        "POLLING_INTERVAL": "60",
        "METER_MODEL": "SDM120",
        "TICK_TIMEOUT_S": "15",
        "REQUEST_TIMEOUT_S": "4",
        "DEVICE_ID": "garage-meter",
        "DEVICE_NAME": "Garage",
        "TIMEZONE": "Europe/Amsterdam",
        "STORE_PATH": "/tmp/test-meter.db",
        "HEALTH_PATH": "/tmp/test-health.json",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables."""
    env = {"METER_ADDRESS": "10.0.0.50"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def settings() -> MeterSettings:
    """SDM630 settings with UTC day boundaries."""
    return MeterSettings(
        meter_address="192.168.1.60",
        meter_port=502,
        meter_id=1,
        meter_model="sdm630",
        timezone="UTC",
        device_id="sdm630-test",
        device_name="Test SDM630",
    )


@pytest.fixture()
def store() -> MemoryCapabilityStore:
    return MemoryCapabilityStore(device_id="sdm630-test", device_name="Test SDM630")


class FakeClock:
    """Callable clock returning a settable aware datetime."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 18, 9, 0, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Writable test model
# ---------------------------------------------------------------------------

WRITABLE_INPUT_REGISTERS = [
    RegisterDef("totsyspower", 52, FLOAT32, "Total System Power"),
    RegisterDef("totalImEnergy", 72, FLOAT32, "Total Import Energy"),
    RegisterDef("totalExEnergy", 74, FLOAT32, "Total Export Energy"),
]

WRITABLE_HOLDING_REGISTERS = [
    RegisterDef("demand_period", 2, UINT16, "Demand Period"),
    RegisterDef("max_current", 8, UINT16, "Max Current", scale_exponent=-1),
    RegisterDef("pf_limit", 10, UINT16, "Power Factor Limit", scale_exponent=-2),
    RegisterDef("relay_enabled", 20, UINT16, "Relay Output"),
    RegisterDef("system_voltage", 30, FLOAT32, "System Voltage"),
]


def _writable_mapping(result_key: str, metric: str, **kwargs: object) -> CapabilityMapping:
    return CapabilityMapping(
        result_key=result_key,
        output_metrics=(metric,),
        validate=make_validator(bool(kwargs.pop("reject_unconnected", False))),
        transform=make_transform(bool(kwargs.pop("round_result", False))),
        **kwargs,  # type: ignore[arg-type]
    )


WRITABLE_MODEL = MeterModel(
    name="writable",
    input_registers=tuple(WRITABLE_INPUT_REGISTERS),
    holding_registers=tuple(WRITABLE_HOLDING_REGISTERS),
    mappings=(
        _writable_mapping("totsyspower", "measure_power", round_result=True),
        _writable_mapping("totalImEnergy", "meter_power.imported"),
        _writable_mapping("totalExEnergy", "meter_power.exported"),
        _writable_mapping("demand_period", "meter_demand_period"),
        _writable_mapping("max_current", "meter_max_current", reject_unconnected=True),
        _writable_mapping("pf_limit", "meter_pf_limit"),
        _writable_mapping("relay_enabled", "meter_relay", value_type="boolean"),
        _writable_mapping("system_voltage", "meter_system_voltage"),
    ),
    import_energy_key="totalImEnergy",
    export_energy_key="totalExEnergy",
)


@pytest.fixture()
def writable_model() -> MeterModel:
    return WRITABLE_MODEL
