"""
Meter daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded IPs or device identities.

CHANGELOG:
- 2026-10-17: Fall back to the default polling interval instead of failing
- 2026-10-18: Validate TIMEZONE with pytz
- 2026-10-15: Add TIMEZONE for local-midnight daily resets
- 2026-10-07: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import tzinfo

import pytz
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from energymeter.src.meters import MeterModel, get_meter_model

logger = logging.getLogger(__name__)

DEFAULT_POLLING_INTERVAL_S = 28
MIN_POLLING_INTERVAL_S = 5
MAX_POLLING_INTERVAL_S = 300


class MeterSettings(BaseSettings):
    """Configuration of one meter instance.

    Attributes:
        meter_address: Meter (or Modbus gateway) IP address / hostname.
        meter_port: Modbus TCP port (default 502).
        meter_id: Modbus unit identifier (default 1).
        polling_interval: Seconds between polls, 5-300.  Out-of-range or
            non-numeric values fall back to 28.
        meter_model: Supported model name (``sdm630``, ``sdm120``, ``sdm72``).
        tick_timeout_s: Upper bound for connecting and reading one poll.
        request_timeout_s: Timeout per Modbus request.
        device_id: Identifier under which metrics and state are stored.
            Defaults to meter_address.
        device_name: Human-readable name used in logs.
        timezone: IANA zone defining local midnight; empty uses the host zone.
        store_path: SQLite file for metrics and persisted daily state.
        health_path: JSON health file rewritten after every poll.
        log_level: Root log level.
    """

    meter_address: str
    meter_port: int = 502
    meter_id: int = 1
    polling_interval: int = DEFAULT_POLLING_INTERVAL_S
    meter_model: str = "sdm630"
    tick_timeout_s: float = 22.0
    request_timeout_s: float = 10.0
    device_id: str = ""
    device_name: str = ""
    timezone: str = ""
    store_path: str = "/data/energymeter.db"
    health_path: str = "/data/health.json"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _default_device_identity(self) -> MeterSettings:
        """Default device_id to meter_address and device_name to device_id."""
        if not self.device_id:
            self.device_id = self.meter_address
        if not self.device_name:
            self.device_name = self.device_id
        return self

    @field_validator("polling_interval", mode="before")
    @classmethod
    def polling_interval_falls_back_to_default(cls, v: object) -> int:
        """Coerce the polling interval, using the default when unusable."""
        try:
            seconds = float(v)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.warning(
                "Invalid polling interval %r, using default: %d seconds",
                v,
                DEFAULT_POLLING_INTERVAL_S,
            )
            return DEFAULT_POLLING_INTERVAL_S
        if not MIN_POLLING_INTERVAL_S <= seconds <= MAX_POLLING_INTERVAL_S:
            logger.warning(
                "Polling interval %r outside %d-%d seconds, using default: %d seconds",
                v,
                MIN_POLLING_INTERVAL_S,
                MAX_POLLING_INTERVAL_S,
                DEFAULT_POLLING_INTERVAL_S,
            )
            return DEFAULT_POLLING_INTERVAL_S
        return int(seconds)

    @field_validator("meter_port")
    @classmethod
    def meter_port_must_be_valid(cls, v: int) -> int:
        """Validate Modbus TCP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("METER_PORT must be between 1 and 65535")
        return v

    @field_validator("meter_id")
    @classmethod
    def meter_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus unit ID is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("METER_ID must be between 1 and 247")
        return v

    @field_validator("meter_model")
    @classmethod
    def meter_model_must_be_supported(cls, v: str) -> str:
        """Validate the meter model against the model registry."""
        try:
            return get_meter_model(v).name
        except KeyError as exc:
            raise ValueError(str(exc.args[0])) from None

    @field_validator("tick_timeout_s", "request_timeout_s")
    @classmethod
    def timeouts_must_be_positive(cls, v: float) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be > 0")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        """Validate TIMEZONE is a known IANA zone (or empty)."""
        if v:
            try:
                pytz.timezone(v)
            except pytz.UnknownTimeZoneError:
                raise ValueError(f"TIMEZONE '{v}' is not a known IANA time zone") from None
        return v

    @property
    def zone(self) -> tzinfo | None:
        """Zone for daily resets; ``None`` means the host's local zone."""
        return pytz.timezone(self.timezone) if self.timezone else None

    @property
    def meter_definition(self) -> MeterModel:
        return get_meter_model(self.meter_model)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
