"""
Mapping engine: decoded measurements to metric updates.

Applies a meter model's capability mappings to one poll's merged measurements
and reports the results to the capability store.  For every mapping, in
declaration order:

1. Look up ``result_key``; absent keys are skipped (optional registers).
2. Skip when the validator rejects the measurement.
3. Skip when ``require_existing`` is set and the metric is not provisioned.
4. Transform; a ``None`` result is skipped.
5. Report the value to every output metric independently.

A mapping that raises is logged and skipped; the rest of the table still runs.
Later mappings overwrite earlier ones targeting the same metric.

The engine is stateless: the same input always produces the same updates.

CHANGELOG:
- 2026-10-13: Report each output metric independently
- 2026-10-06: Initial creation, replaces the sample normalizer

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from energymeter.src.mappings import CapabilityMapping, make_validator
from energymeter.src.meters import NET_ENERGY_METRIC
from energymeter.src.models import Measurement, MetricUpdate, MetricValue
from energymeter.src.store import CapabilityStore

logger = logging.getLogger(__name__)

_valid_energy = make_validator()


async def publish_metric(store: CapabilityStore, metric: str, value: MetricValue) -> bool:
    """Provision *metric* if needed and set its value.

    Failures are logged, never raised.

    Returns:
        True if the value was accepted by the store.
    """
    try:
        if not await store.has_metric(metric):
            await store.add_metric(metric)
    except Exception:
        logger.warning("Failed to add metric '%s'", metric, exc_info=True)

    try:
        await store.set_metric_value(metric, value)
    except Exception:
        logger.warning("Failed to set metric '%s' to %r", metric, value, exc_info=True)
        return False
    return True


async def apply_mappings(
    measurements: dict[str, Measurement],
    mappings: Iterable[CapabilityMapping],
    store: CapabilityStore,
) -> list[MetricUpdate]:
    """Apply capability mappings and report the resulting metric values.

    Args:
        measurements: Merged measurements of one poll, keyed by register name.
        mappings: The meter model's mappings, in declaration order.
        store: Capability store receiving the values.

    Returns:
        The metric updates the store accepted, in the order they were made.
    """
    updates: list[MetricUpdate] = []

    for mapping in mappings:
        measurement = measurements.get(mapping.result_key)
        if measurement is None:
            continue

        try:
            if not mapping.validate(measurement):
                continue
            if mapping.require_existing and not await store.has_metric(
                mapping.output_metrics[0]
            ):
                continue
            value = mapping.transform(measurement)
        except Exception:
            logger.error(
                "Error processing capability mapping for '%s'",
                mapping.result_key,
                exc_info=True,
            )
            continue

        if value is None:
            continue

        for metric in mapping.output_metrics:
            if await publish_metric(store, metric, value):
                updates.append(MetricUpdate(metric=metric, value=value))

    return updates


def compute_net_energy(
    measurements: dict[str, Measurement],
    import_key: str,
    export_key: str,
) -> float | None:
    """Return import minus export energy rounded to 2 decimals.

    Returns ``None`` unless both measurements are present and valid.
    """
    imported = measurements.get(import_key)
    exported = measurements.get(export_key)
    if imported is None or exported is None:
        return None
    if not (_valid_energy(imported) and _valid_energy(exported)):
        return None
    try:
        return round(imported.numeric() - exported.numeric(), 2)
    except ValueError:
        logger.warning(
            "Net energy: non-numeric totals (import=%r, export=%r)",
            imported.value,
            exported.value,
        )
        return None


async def publish_net_energy(
    measurements: dict[str, Measurement],
    store: CapabilityStore,
    *,
    import_key: str,
    export_key: str,
    metric: str = NET_ENERGY_METRIC,
) -> MetricUpdate | None:
    """Compute net energy and report it as its own metric."""
    net = compute_net_energy(measurements, import_key, export_key)
    if net is None:
        return None
    logger.info("Net energy: %s (import key=%s, export key=%s)", net, import_key, export_key)
    if await publish_metric(store, metric, net):
        return MetricUpdate(metric=metric, value=net)
    return None


def log_measurements(measurements: dict[str, Measurement]) -> None:
    """Log every decoded measurement at DEBUG level."""
    for key, m in measurements.items():
        logger.debug("Measurement %s: value=%s scale=%s label=%s", key, m.value, m.scale, m.label)
