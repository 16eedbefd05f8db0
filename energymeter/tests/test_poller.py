"""
Tests for the poll orchestrator.

Verifies one poll tick end to end against a mocked AsyncModbusTcpClient:
connect, sequential input/holding reads, decoding, mapping, net energy and
daily counters, teardown on every path, the tick timeout, the in-flight guard
and the holding register write path.

CHANGELOG:
- 2026-10-19: Net energy on degraded ticks, writes to 0.01-scaled registers
- 2026-10-18: Cover degraded ticks (transport error during reads)
- 2026-10-16: Cover update_control write path
- 2026-10-13: Cover in-flight guard
- 2026-10-06: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import struct
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from energymeter.src.config import MeterSettings
from energymeter.src.meters import SDM630, MeterModel
from energymeter.src.models import INVALID_VALUE
from energymeter.src.poller import CLOSED, FAILED, PollOrchestrator
from energymeter.src.registers import FLOAT32, UINT16, RegisterDef
from energymeter.src.store import MemoryCapabilityStore
from pymodbus.exceptions import ConnectionException

_CLIENT_PATH = "energymeter.src.poller.AsyncModbusTcpClient"

_NOW = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers: build mock pymodbus responses and clients
# ---------------------------------------------------------------------------


def _f32_words(value: float) -> list[int]:
    return list(struct.unpack(">HH", struct.pack(">f", value)))


def _make_response(registers: list[int], is_error: bool = False) -> MagicMock:
    """Create a mock pymodbus response PDU."""
    resp = MagicMock()
    resp.isError.return_value = is_error
    resp.registers = registers
    return resp


def _make_mock_client(
    input_values: dict[int, float] | None = None,
    holding_words: dict[int, list[int]] | None = None,
    connect_ok: bool = True,
    error_addresses: set[int] | None = None,
    raise_on_input: set[int] | None = None,
    raise_on_holding: bool = False,
) -> AsyncMock:
    """Create a fully mocked AsyncModbusTcpClient.

    Args:
        input_values: Float32 value per input register address.  Addresses
            not listed answer with a Modbus error response.
        holding_words: Raw words per holding register address.
        connect_ok: Whether connect() should return True.
        error_addresses: Input addresses answering with a Modbus error.
        raise_on_input: Input addresses whose read raises a transport error.
        raise_on_holding: Every holding read raises a transport error.
    """
    input_values = input_values or {}
    holding_words = holding_words or {}
    error_addresses = error_addresses or set()
    raise_on_input = raise_on_input or set()

    client = AsyncMock()
    client.connect = AsyncMock(return_value=connect_ok)
    client.close = MagicMock()

    async def _read_input_registers(
        address: int, *, count: int = 1, device_id: int = 1
    ) -> MagicMock:
        if address in raise_on_input:
            raise ConnectionException("Connection lost")
        if address in error_addresses or address not in input_values:
            return _make_response([], is_error=True)
        return _make_response(_f32_words(input_values[address]))

    async def _read_holding_registers(
        address: int, *, count: int = 1, device_id: int = 1
    ) -> MagicMock:
        if raise_on_holding:
            raise ConnectionException("Connection lost")
        if address not in holding_words:
            return _make_response([], is_error=True)
        return _make_response(holding_words[address])

    client.read_input_registers = AsyncMock(side_effect=_read_input_registers)
    client.read_holding_registers = AsyncMock(side_effect=_read_holding_registers)
    client.write_register = AsyncMock(return_value=_make_response([]))
    return client


_SDM630_VALUES = {
    0: 231.2,  # l1_voltage
    6: -1.0,  # l1_current, no CT
    12: 410.0,  # l1_power
    52: 1520.6,  # totsyspower
    70: 50.0,  # gridFrequency
    72: 120.0,  # totalImEnergy
    74: 45.3,  # totalExEnergy
}


def _orchestrator(
    settings: MeterSettings,
    store: MemoryCapabilityStore,
    model: MeterModel | None = None,
    clock: object = None,
) -> PollOrchestrator:
    return PollOrchestrator(
        settings=settings,
        store=store,
        model=model,
        clock=clock or (lambda: _NOW),  # type: ignore[arg-type]
    )


# ===========================================================================
# Successful tick
# ===========================================================================


class TestPollTick:
    @pytest.mark.asyncio
    async def test_creates_client_from_settings(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES)
        with patch(_CLIENT_PATH, return_value=mock_client) as mock_cls:
            await _orchestrator(settings, store).poll()

        mock_cls.assert_called_once_with("192.168.1.60", port=502, timeout=10.0)
        mock_client.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reads_input_table_in_order_with_unit_id(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES)
        with patch(_CLIENT_PATH, return_value=mock_client):
            await _orchestrator(settings, store).poll()

        calls = mock_client.read_input_registers.await_args_list
        assert [c.args[0] for c in calls] == [r.address for r in SDM630.input_registers]
        assert all(c.kwargs == {"count": 2, "device_id": 1} for c in calls)
        mock_client.read_holding_registers.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ok_tick_updates_metrics(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES)
        with patch(_CLIENT_PATH, return_value=mock_client):
            orch = _orchestrator(settings, store)
            result = await orch.poll()

        assert result.status == "ok"
        assert result.degraded is False
        assert store.metrics["measure_power"] == 1521
        assert store.metrics["meter_l1_power"] == 410
        assert store.metrics["meter_frequency"] == 50.0
        assert store.metrics["meter_power.imported"] == 120.0
        assert store.metrics["meter_power"] == 74.7
        assert store.metrics["meter_power_import_daily"] == 0.0
        assert store.metrics["meter_power_export_daily"] == 0.0
        # Unconnected CT and unreadable registers are skipped.
        assert "meter_l1_current" not in store.metrics
        assert "meter_l2_voltage" not in store.metrics
        assert result.measurements["l2_voltage"].value == INVALID_VALUE
        assert orch.state == CLOSED
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_daily_counter_across_ticks(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        orch = _orchestrator(settings, store)
        with patch(_CLIENT_PATH, return_value=_make_mock_client(_SDM630_VALUES)):
            await orch.poll()
        with patch(
            _CLIENT_PATH,
            return_value=_make_mock_client({**_SDM630_VALUES, 72: 125.5, 74: 46.3}),
        ):
            result = await orch.poll()

        assert store.metrics["meter_power_import_daily"] == 5.5
        assert store.metrics["meter_power_export_daily"] == 1.0
        assert {"metric": "meter_power_import_daily", "value": 5.5} in [
            u.model_dump() for u in result.updates
        ]

    @pytest.mark.asyncio
    async def test_modbus_error_response_is_sentinel_not_degraded(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES, error_addresses={52})
        with patch(_CLIENT_PATH, return_value=mock_client):
            result = await _orchestrator(settings, store).poll()

        assert result.status == "ok"
        assert result.degraded is False
        assert result.measurements["totsyspower"].value == INVALID_VALUE
        assert "measure_power" not in store.metrics
        assert store.metrics["meter_power"] == 74.7
        assert store.metrics["meter_power_import_daily"] == 0.0

    @pytest.mark.asyncio
    async def test_holding_keys_override_input_keys(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        model = MeterModel(
            name="overlap",
            input_registers=(RegisterDef("x", 0, FLOAT32),),
            holding_registers=(RegisterDef("x", 0, UINT16),),
            mappings=(),
            import_energy_key="x",
            export_energy_key="x",
        )
        mock_client = _make_mock_client({0: 3.5}, holding_words={0: [7]})
        with patch(_CLIENT_PATH, return_value=mock_client):
            result = await _orchestrator(settings, store, model).poll()

        assert result.measurements["x"].value == "7"


# ===========================================================================
# Failed ticks
# ===========================================================================


class TestPollFailures:
    @pytest.mark.asyncio
    async def test_connect_false_fails_tick(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES, connect_ok=False)
        with patch(_CLIENT_PATH, return_value=mock_client):
            orch = _orchestrator(settings, store)
            result = await orch.poll()

        assert result.status == "failed"
        assert orch.state == FAILED
        assert store.metrics == {}
        mock_client.read_input_registers.assert_not_awaited()
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_raises_fails_tick(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES)
        mock_client.connect.side_effect = OSError("Connection refused")
        with patch(_CLIENT_PATH, return_value=mock_client):
            result = await _orchestrator(settings, store).poll()

        assert result.status == "failed"
        assert "Connection refused" in (result.error or "")
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_tick_timeout_abandons_tick(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        settings = settings.model_copy(update={"tick_timeout_s": 0.05})
        mock_client = _make_mock_client(_SDM630_VALUES)

        async def _hang() -> bool:
            await asyncio.sleep(10)
            return True

        mock_client.connect.side_effect = _hang
        with patch(_CLIENT_PATH, return_value=mock_client):
            orch = _orchestrator(settings, store)
            result = await orch.poll()

        assert result.status == "failed"
        assert result.error == "timeout"
        assert orch.state == FAILED
        assert store.metrics == {}
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_processing_error_never_escapes(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES)
        with (
            patch(_CLIENT_PATH, return_value=mock_client),
            patch(
                "energymeter.src.poller.apply_mappings",
                AsyncMock(side_effect=RuntimeError("boom")),
            ),
        ):
            result = await _orchestrator(settings, store).poll()

        assert result.status == "failed"
        assert result.error == "boom"
        mock_client.close.assert_called_once()


# ===========================================================================
# Degraded ticks
# ===========================================================================


class TestDegradedTick:
    """A transport error during reading leaves daily baselines untouched."""

    @pytest.mark.asyncio
    async def test_holding_transport_error_keeps_baseline(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        store.persisted["daily_import_baseline"] = 100.0
        store.persisted["last_daily_reset_date"] = _NOW.replace(hour=0).isoformat()
        store.metrics["meter_power_import_daily"] = 2.0

        mock_client = _make_mock_client(
            {52: 980.4, 72: 120.0, 74: 45.3},
            raise_on_holding=True,
        )
        with patch(_CLIENT_PATH, return_value=mock_client):
            result = await _orchestrator(settings, store, writable_model).poll()

        assert result.status == "ok"
        assert result.degraded is True
        # Input mappings still applied.
        assert store.metrics["measure_power"] == 980
        assert store.metrics["meter_power.imported"] == 120.0
        # Net energy still published, daily counters skipped.
        assert store.metrics["meter_power"] == 74.7
        assert any(u.metric == "meter_power" for u in result.updates)
        assert store.persisted["daily_import_baseline"] == 100.0
        assert store.metrics["meter_power_import_daily"] == 2.0
        assert "daily_export_baseline" not in store.persisted
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_input_transport_error_degrades(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        mock_client = _make_mock_client(_SDM630_VALUES, raise_on_input={74})
        with patch(_CLIENT_PATH, return_value=mock_client):
            result = await _orchestrator(settings, store).poll()

        assert result.degraded is True
        assert result.measurements["totalExEnergy"].value == INVALID_VALUE
        assert store.metrics["meter_power.imported"] == 120.0
        assert "meter_power_import_daily" not in store.metrics
        assert "meter_power" not in store.metrics


# ===========================================================================
# In-flight guard / stop
# ===========================================================================


class TestInFlightGuard:
    @pytest.mark.asyncio
    async def test_second_poll_skipped_while_first_in_flight(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        release = asyncio.Event()
        mock_client = _make_mock_client(_SDM630_VALUES)

        async def _slow_connect() -> bool:
            await release.wait()
            return True

        mock_client.connect.side_effect = _slow_connect
        with patch(_CLIENT_PATH, return_value=mock_client) as mock_cls:
            orch = _orchestrator(settings, store)
            first = asyncio.create_task(orch.poll())
            await asyncio.sleep(0)
            await asyncio.sleep(0)

            assert orch.busy is True
            second = await orch.poll()

            release.set()
            first_result = await first

        assert second.status == "skipped"
        assert second.error == "busy"
        assert first_result.status == "ok"
        mock_cls.assert_called_once()

    @pytest.mark.asyncio
    async def test_stopped_orchestrator_refuses_ticks(
        self, settings: MeterSettings, store: MemoryCapabilityStore
    ) -> None:
        with patch(_CLIENT_PATH) as mock_cls:
            orch = _orchestrator(settings, store)
            orch.stop()
            result = await orch.poll()

        assert result.status == "skipped"
        mock_cls.assert_not_called()


# ===========================================================================
# Write path
# ===========================================================================


class TestUpdateControl:
    @pytest.mark.asyncio
    async def test_writes_register_and_updates_metric(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_demand_period", 30
            )

        assert ok is True
        mock_client.write_register.assert_awaited_once_with(2, 30, device_id=1)
        assert store.metrics["meter_demand_period"] == 30
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_register_scale_inverted(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_max_current", 23.5
            )

        assert ok is True
        mock_client.write_register.assert_awaited_once_with(8, 235, device_id=1)
        assert store.metrics["meter_max_current"] == 23.5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("value", "word"), [(0.07, 7), (0.29, 29), (0.57, 57)])
    async def test_hundredths_scaled_register(
        self,
        value: float,
        word: int,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_pf_limit", value
            )

        assert ok is True
        mock_client.write_register.assert_awaited_once_with(10, word, device_id=1)
        assert store.metrics["meter_pf_limit"] == value

    @pytest.mark.asyncio
    async def test_boolean_metric(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client()
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_relay", True
            )

        assert ok is True
        mock_client.write_register.assert_awaited_once_with(20, 1, device_id=1)
        assert store.metrics["meter_relay"] is True

    @pytest.mark.asyncio
    async def test_text_value_cast_to_number(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        with patch(_CLIENT_PATH, return_value=_make_mock_client()):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_demand_period", "15"
            )

        assert ok is True
        assert store.metrics["meter_demand_period"] == 15.0

    @pytest.mark.parametrize(
        ("metric", "value"),
        [
            ("meter_unknown", 1),  # no mapping
            ("measure_power", 100),  # input register only
            ("meter_system_voltage", 230.0),  # two-word register
            ("meter_max_current", -1),  # rejected by validator
            ("meter_demand_period", 2.5),  # not representable in UINT16
            ("meter_demand_period", 70000),  # out of range
        ],
    )
    @pytest.mark.asyncio
    async def test_unwritable_values_rejected_without_connecting(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
        metric: str,
        value: object,
    ) -> None:
        with patch(_CLIENT_PATH) as mock_cls:
            ok = await _orchestrator(settings, store, writable_model).update_control(
                metric, value  # type: ignore[arg-type]
            )

        assert ok is False
        mock_cls.assert_not_called()
        assert metric not in store.metrics

    @pytest.mark.asyncio
    async def test_error_response_returns_false(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client()
        mock_client.write_register.return_value = _make_response([], is_error=True)
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_demand_period", 30
            )

        assert ok is False
        assert "meter_demand_period" not in store.metrics
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_false_returns_false(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client(connect_ok=False)
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_demand_period", 30
            )

        assert ok is False
        mock_client.write_register.assert_not_awaited()
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        mock_client = _make_mock_client()
        mock_client.write_register.side_effect = ConnectionException("Connection lost")
        with patch(_CLIENT_PATH, return_value=mock_client):
            ok = await _orchestrator(settings, store, writable_model).update_control(
                "meter_demand_period", 30
            )

        assert ok is False
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_waits_for_running_poll(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        release = asyncio.Event()
        mock_client = _make_mock_client({72: 120.0, 74: 45.3})
        connects = 0

        async def _connect() -> bool:
            nonlocal connects
            connects += 1
            if connects == 1:
                await release.wait()
            return True

        mock_client.connect.side_effect = _connect
        with patch(_CLIENT_PATH, return_value=mock_client):
            orch = _orchestrator(settings, store, writable_model)
            poll_task = asyncio.create_task(orch.poll())
            await asyncio.sleep(0)
            write_task = asyncio.create_task(orch.update_control("meter_demand_period", 30))
            await asyncio.sleep(0)

            mock_client.write_register.assert_not_awaited()

            release.set()
            poll_result = await poll_task
            ok = await write_task

        assert poll_result.status == "ok"
        assert ok is True
        mock_client.write_register.assert_awaited_once_with(2, 30, device_id=1)

    @pytest.mark.asyncio
    async def test_stopped_refuses_writes(
        self,
        settings: MeterSettings,
        store: MemoryCapabilityStore,
        writable_model: MeterModel,
    ) -> None:
        orch = _orchestrator(settings, store, writable_model)
        orch.stop()
        with patch(_CLIENT_PATH) as mock_cls:
            assert await orch.update_control("meter_demand_period", 30) is False
        mock_cls.assert_not_called()
