"""
Solar portal configuration schema.

Defines the typed, frozen view of the YAML configuration.  The loader
parses ``defaults.yaml`` (plus an optional override file) into these
types; nothing else in the system reads configuration files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings handed to solar_kernel.db.engine."""

    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout_seconds: int = 30
    statement_timeout_ms: int = 15000


# ---------------------------------------------------------------------------
# Bidding and billing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BiddingConfig:
    # Window used when a bid lazily creates its session
    default_window_hours: int = 48


@dataclass(frozen=True)
class BillingConfig:
    rate_per_kwh: Decimal = Decimal("52")
    credit_rate_per_kwh: Decimal = Decimal("30")
    monthly_bill_due_days: int = 14


@dataclass(frozen=True)
class SchedulerConfig:
    sweep_interval_seconds: int = 300
    overdue_sweep_enabled: bool = True
    # Bills the previous month on every tick; duplicates are no-ops
    monthly_billing_enabled: bool = False


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceRegistration:
    """A meter device allowed to push signed measurements."""

    token: str
    device_id: str
    application_id: UUID
    secret: str


@dataclass(frozen=True)
class TelemetryConfig:
    devices: tuple[DeviceRegistration, ...] = ()

    def device_for_token(self, token: str) -> DeviceRegistration | None:
        for device in self.devices:
            if device.token == token:
                return device
        return None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SolarConfig:
    """The complete runtime configuration."""

    database: DatabaseConfig
    bidding: BiddingConfig = field(default_factory=BiddingConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    checksum: str = ""
