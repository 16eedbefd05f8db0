"""
Async Modbus TCP poll orchestrator for one Eastron meter.

Owns one round trip per poll tick:

    IDLE -> CONNECTING -> READING -> PROCESSING -> CLOSED
                 \\____________\\___> FAILED (connect error / timeout)

- A fresh AsyncModbusTcpClient is created for every tick and closed on every
  exit path; connections are never pooled or kept warm.
- Connecting and reading are bounded by ``tick_timeout_s``.  On timeout the
  client is torn down and the tick abandoned before any metric is updated.
- Reads are strictly sequential: the whole input register table, then the
  whole holding register table.  Holding keys override input keys.
- A transport error while reading degrades the tick: mappings derivable from
  what was read and net energy are still published, but the daily counters
  are skipped so persisted baselines stay untouched.
- At most one tick is in flight per meter.  A tick started while another is
  running is dropped.
- Never propagates exceptions to the caller.

Also provides the write path (:meth:`PollOrchestrator.update_control`) for
metrics backed by a holding register.

CHANGELOG:
- 2026-10-19: Publish net energy on degraded ticks
- 2026-10-18: Skip daily counters when a transport error interrupts reading
- 2026-10-16: Add update_control write path
- 2026-10-13: Drop overlapping ticks instead of running them concurrently
- 2026-10-06: Initial creation, adapted from the group poller

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException

from energymeter.src.config import MeterSettings
from energymeter.src.daily import DailyBaselineTracker
from energymeter.src.decoder import ReadFn, RegisterReadError, encode_value, read_measurements
from energymeter.src.mapper import (
    apply_mappings,
    log_measurements,
    publish_metric,
    publish_net_energy,
)
from energymeter.src.mappings import cast_metric_value, make_validator
from energymeter.src.meters import MeterModel
from energymeter.src.models import Measurement, MetricUpdate, MetricValue, PollResult
from energymeter.src.registers import register_index
from energymeter.src.store import CapabilityStore

logger = logging.getLogger(__name__)

IDLE = "IDLE"
CONNECTING = "CONNECTING"
READING = "READING"
PROCESSING = "PROCESSING"
CLOSED = "CLOSED"
FAILED = "FAILED"

_valid_energy = make_validator()


class PollOrchestrator:
    """Runs poll ticks and control writes for one meter instance.

    Args:
        settings: Connection and timing configuration.
        store: Capability store receiving metric values and daily state.
        model: Meter model; defaults to the one named in *settings*.
        clock: Current-time source for the daily trackers (tests).
    """

    def __init__(
        self,
        *,
        settings: MeterSettings,
        store: CapabilityStore,
        model: MeterModel | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self.model = model or settings.meter_definition
        self._holding = register_index(list(self.model.holding_registers))
        self.import_tracker = DailyBaselineTracker(
            store,
            "import",
            shared_reset_date=self.model.shared_reset_date,
            tz=settings.zone,
            clock=clock,
        )
        self.export_tracker = DailyBaselineTracker(
            store,
            "export",
            shared_reset_date=self.model.shared_reset_date,
            tz=settings.zone,
            clock=clock,
        )
        self._lock = asyncio.Lock()
        self._stopped = False
        self.state = IDLE

    @property
    def settings(self) -> MeterSettings:
        return self._settings

    @property
    def busy(self) -> bool:
        """True while a tick or control write holds the transport."""
        return self._lock.locked()

    def update_settings(self, settings: MeterSettings) -> None:
        """Use new connection settings from the next tick on."""
        self._settings = settings

    def stop(self) -> None:
        """Refuse all further ticks and writes."""
        self._stopped = True

    def _new_client(self) -> AsyncModbusTcpClient:
        return AsyncModbusTcpClient(
            self._settings.meter_address,
            port=self._settings.meter_port,
            timeout=self._settings.request_timeout_s,
        )

    # ------------------------------------------------------------------
    # Poll tick
    # ------------------------------------------------------------------

    async def poll(self) -> PollResult:
        """Execute one poll tick.

        Returns:
            A :class:`PollResult`; ``status="skipped"`` when another tick is
            in flight or the orchestrator was stopped.
        """
        if self._stopped:
            logger.info("Meter '%s' stopped, not polling", self._store.device_name)
            return PollResult(status="skipped", error="stopped")
        if self._lock.locked():
            logger.warning(
                "Previous poll of '%s' still in flight, dropping this tick",
                self._store.device_name,
            )
            return PollResult(status="skipped", error="busy")

        async with self._lock:
            try:
                return await self._poll_locked()
            except Exception as exc:
                self.state = FAILED
                logger.error("Poll cycle error for '%s'", self._store.device_name, exc_info=True)
                return PollResult(status="failed", error=str(exc) or type(exc).__name__)

    async def _poll_locked(self) -> PollResult:
        settings = self._settings
        client = self._new_client()
        transport_errors: list[Exception] = []
        logger.debug(
            "Polling '%s' at %s:%d (unit %d)",
            self._store.device_name,
            settings.meter_address,
            settings.meter_port,
            settings.meter_id,
        )
        try:
            try:
                measurements = await asyncio.wait_for(
                    self._connect_and_read(client, settings.meter_id, transport_errors),
                    timeout=settings.tick_timeout_s,
                )
            except TimeoutError:
                self.state = FAILED
                logger.warning(
                    "Poll of %s:%d timed out after %.1fs",
                    settings.meter_address,
                    settings.meter_port,
                    settings.tick_timeout_s,
                )
                return PollResult(status="failed", error="timeout")
            except Exception as exc:
                self.state = FAILED
                logger.warning(
                    "Failed to connect to Modbus device %s:%d",
                    settings.meter_address,
                    settings.meter_port,
                    exc_info=True,
                )
                return PollResult(status="failed", error=str(exc) or type(exc).__name__)

            self.state = PROCESSING
            updates, degraded = await self._process(measurements, transport_errors)
            return PollResult(
                status="ok",
                measurements=measurements,
                updates=updates,
                degraded=degraded,
            )
        finally:
            client.close()
            if self.state != FAILED:
                self.state = CLOSED
            logger.debug("Disconnected from %s:%d", settings.meter_address, settings.meter_port)

    async def _connect_and_read(
        self,
        client: AsyncModbusTcpClient,
        unit_id: int,
        transport_errors: list[Exception],
    ) -> dict[str, Measurement]:
        self.state = CONNECTING
        ok = await client.connect()
        if not ok:
            raise ConnectionException("connect returned False")

        self.state = READING
        measurements = await read_measurements(
            self.model.input_registers,
            _reader(client.read_input_registers, unit_id, transport_errors),
        )
        measurements.update(
            await read_measurements(
                self.model.holding_registers,
                _reader(client.read_holding_registers, unit_id, transport_errors),
            )
        )
        return measurements

    async def _process(
        self,
        measurements: dict[str, Measurement],
        transport_errors: list[Exception],
    ) -> tuple[list[MetricUpdate], bool]:
        log_measurements(measurements)
        updates = await apply_mappings(measurements, self.model.mappings, self._store)

        net = await publish_net_energy(
            measurements,
            self._store,
            import_key=self.model.import_energy_key,
            export_key=self.model.export_energy_key,
        )
        if net is not None:
            updates.append(net)

        if transport_errors:
            logger.warning(
                "%d register read(s) on '%s' hit transport errors; "
                "skipping daily counters this tick",
                len(transport_errors),
                self._store.device_name,
            )
            return updates, True

        for key, tracker in (
            (self.model.import_energy_key, self.import_tracker),
            (self.model.export_energy_key, self.export_tracker),
        ):
            measurement = measurements.get(key)
            if measurement is None or not _valid_energy(measurement):
                continue
            try:
                total = measurement.numeric()
            except ValueError:
                logger.warning("Register '%s': non-numeric energy total %r", key, measurement.value)
                continue
            daily = await tracker.update(total)
            if daily is not None:
                updates.append(MetricUpdate(metric=tracker.metric, value=daily))

        return updates, False

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _register_word(self, metric: str, value: MetricValue) -> tuple[int, int] | None:
        """Resolve *metric* to ``(address, raw_word)``, or None when not writable."""
        mapping = self.model.find_mapping(metric)
        if mapping is None:
            logger.warning("Mapping not found for metric: %s", metric)
            return None
        reg = self._holding.get(mapping.result_key)
        if reg is None:
            logger.warning("Register definition not found for result key: %s", mapping.result_key)
            return None

        # Writing runs the read transform with the register scale inverted.
        scale = str(-reg.scale_exponent)
        text = str(int(value)) if isinstance(value, bool) else str(value)
        measurement = Measurement(value=text, scale=scale, label=reg.label)
        try:
            if not mapping.validate(measurement):
                logger.warning("Validation failed for metric: %s", metric)
                return None
            raw = mapping.transform(measurement)
            if raw is None:
                logger.warning("Transformed value is null for metric: %s", metric)
                return None
            words = encode_value(reg.encoding, raw, reg.word_length)
        except ValueError as exc:
            logger.warning("%s register value not valid: %s", metric, exc)
            return None

        if len(words) != 1:
            logger.warning(
                "%s: register '%s' spans %d words, only single-register writes are supported",
                metric,
                reg.name,
                len(words),
            )
            return None
        return reg.address, words[0]

    async def update_control(self, metric: str, value: MetricValue) -> bool:
        """Write a metric value to its backing holding register.

        Failures (unknown metric, invalid value, transport error) are logged
        and reported as False, never raised.

        Returns:
            True if the device accepted the write and the metric was updated.
        """
        if self._stopped:
            logger.info("Meter '%s' stopped, ignoring write to %s", self._store.device_name, metric)
            return False

        logger.info("%s value: %r", metric, value)
        target = self._register_word(metric, value)
        if target is None:
            return False
        address, word = target

        async with self._lock:
            settings = self._settings
            client = self._new_client()
            try:
                ok = await asyncio.wait_for(client.connect(), timeout=settings.tick_timeout_s)
                if not ok:
                    logger.warning("Failed to connect to Modbus device (connect returned False)")
                    return False
                logger.info("%s register: %d value: %d", metric, address, word)
                response = await asyncio.wait_for(
                    client.write_register(address, word, device_id=settings.meter_id),
                    timeout=settings.tick_timeout_s,
                )
                if response.isError():
                    logger.warning("Modbus error writing %s (address=%d): %s", metric, address, response)
                    return False
            except Exception:
                logger.warning("Error in update_control for %s", metric, exc_info=True)
                return False
            finally:
                client.close()

        try:
            typed = cast_metric_value(value, self.model.metric_value_type(metric))
        except ValueError:
            logger.warning("Cannot cast %r for metric %s", value, metric)
            return False
        return await publish_metric(self._store, metric, typed)


def _reader(
    fn: Callable[..., Awaitable[Any]],
    unit_id: int,
    transport_errors: list[Exception],
) -> ReadFn:
    """Adapt a pymodbus read method to the decoder's ``read(address, count)``.

    Exceptions raised by the client are recorded as transport errors; Modbus
    exception responses raise :class:`RegisterReadError` instead.
    """

    async def _read(address: int, count: int) -> list[int]:
        try:
            response = await fn(address, count=count, device_id=unit_id)
        except Exception as exc:
            transport_errors.append(exc)
            raise
        if response.isError():
            raise RegisterReadError(f"Modbus error response at address {address}: {response}")
        return list(response.registers[:count])

    return _read
