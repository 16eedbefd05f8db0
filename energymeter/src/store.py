"""
Capability store: metric values and persisted per-device state.

The poll core never touches global state; it talks to a
:class:`CapabilityStore` supplied by the caller.  Two implementations:

- :class:`MemoryCapabilityStore`: plain dicts, for tests and dry runs.
- :class:`SqliteCapabilityStore`: durable async SQLite store (WAL mode) so
  daily baselines and last reported values survive process restarts.  One
  database file can hold several meters, rows are keyed by device id.

Operations:
- has_metric / add_metric: metric provisioning (add is idempotent).
- get_metric_value / set_metric_value: last reported metric value.
- get_persisted_value / set_persisted_value(s): opaque per-device state;
  ``set_persisted_values`` writes several keys in one transaction.

Values are stored as JSON text.

CHANGELOG:
- 2026-10-11: Add set_persisted_values for atomic baseline writes
- 2026-10-07: Initial creation, adapted from the upload spool

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from energymeter.src.models import MetricValue


class CapabilityStore(Protocol):
    """Interface the poll core needs from the host platform."""

    device_id: str
    device_name: str

    async def has_metric(self, name: str) -> bool: ...

    async def add_metric(self, name: str) -> None: ...

    async def get_metric_value(self, name: str) -> MetricValue | None: ...

    async def set_metric_value(self, name: str, value: MetricValue) -> None: ...

    async def get_persisted_value(self, key: str) -> Any: ...

    async def set_persisted_value(self, key: str, value: Any) -> None: ...

    async def set_persisted_values(self, values: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryCapabilityStore:
    """Dict-backed capability store.

    Setting a value on a metric that was never added provisions it, mirroring
    the SQLite store.
    """

    def __init__(self, device_id: str = "meter", device_name: str = "") -> None:
        self.device_id = device_id
        self.device_name = device_name or device_id
        self.metrics: dict[str, MetricValue | None] = {}
        self.persisted: dict[str, Any] = {}

    async def has_metric(self, name: str) -> bool:
        return name in self.metrics

    async def add_metric(self, name: str) -> None:
        self.metrics.setdefault(name, None)

    async def get_metric_value(self, name: str) -> MetricValue | None:
        return self.metrics.get(name)

    async def set_metric_value(self, name: str, value: MetricValue) -> None:
        self.metrics[name] = value

    async def get_persisted_value(self, key: str) -> Any:
        return self.persisted.get(key)

    async def set_persisted_value(self, key: str, value: Any) -> None:
        self.persisted[key] = value

    async def set_persisted_values(self, values: dict[str, Any]) -> None:
        self.persisted.update(values)


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

_CREATE_METRICS_SQL = """\
CREATE TABLE IF NOT EXISTS metrics (
    device_id TEXT NOT NULL,
    name TEXT NOT NULL,
    value TEXT,
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (device_id, name)
);
"""

_CREATE_PERSISTED_SQL = """\
CREATE TABLE IF NOT EXISTS persisted (
    device_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT,
    PRIMARY KEY (device_id, key)
);
"""

_ADD_METRIC_SQL = """\
INSERT OR IGNORE INTO metrics (device_id, name, value) VALUES (?, ?, NULL);
"""

_SET_METRIC_SQL = """\
INSERT INTO metrics (device_id, name, value) VALUES (?, ?, ?)
ON CONFLICT (device_id, name)
DO UPDATE SET value = excluded.value, updated_at = datetime('now');
"""

_GET_METRIC_SQL = "SELECT value FROM metrics WHERE device_id = ? AND name = ?;"

_SET_PERSISTED_SQL = """\
INSERT INTO persisted (device_id, key, value) VALUES (?, ?, ?)
ON CONFLICT (device_id, key) DO UPDATE SET value = excluded.value;
"""

_GET_PERSISTED_SQL = "SELECT value FROM persisted WHERE device_id = ? AND key = ?;"


def _load(text: str | None) -> Any:
    return None if text is None else json.loads(text)


class SqliteCapabilityStore:
    """Durable capability store backed by a SQLite database.

    Args:
        path: Filesystem path for the SQLite database file.
        device_id: Identifier of the meter whose rows this store reads/writes.
        device_name: Human-readable meter name (logging only).

    Usage::

        async with SqliteCapabilityStore("/data/energymeter.db", device_id="sdm630-1") as store:
            await store.set_metric_value("measure_power", 1520)
    """

    def __init__(self, path: str | Path, *, device_id: str, device_name: str = "") -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None
        self.device_id = device_id
        self.device_name = device_name or device_id

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_METRICS_SQL)
        await self._db.execute(_CREATE_PERSISTED_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteCapabilityStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def has_metric(self, name: str) -> bool:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_GET_METRIC_SQL, (self.device_id, name))
        return await cursor.fetchone() is not None

    async def add_metric(self, name: str) -> None:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_ADD_METRIC_SQL, (self.device_id, name))
        await self._db.commit()

    async def get_metric_value(self, name: str) -> MetricValue | None:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_GET_METRIC_SQL, (self.device_id, name))
        row = await cursor.fetchone()
        return None if row is None else _load(row[0])

    async def set_metric_value(self, name: str, value: MetricValue) -> None:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_SET_METRIC_SQL, (self.device_id, name, json.dumps(value)))
        await self._db.commit()

    # ------------------------------------------------------------------
    # Persisted state
    # ------------------------------------------------------------------

    async def get_persisted_value(self, key: str) -> Any:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_GET_PERSISTED_SQL, (self.device_id, key))
        row = await cursor.fetchone()
        return None if row is None else _load(row[0])

    async def set_persisted_value(self, key: str, value: Any) -> None:
        await self.set_persisted_values({key: value})

    async def set_persisted_values(self, values: dict[str, Any]) -> None:
        """Write several keys in a single transaction."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        rows = [(self.device_id, key, json.dumps(value)) for key, value in values.items()]
        try:
            await self._db.executemany(_SET_PERSISTED_SQL, rows)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
