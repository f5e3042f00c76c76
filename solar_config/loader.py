"""
Configuration Loader (``solar_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen ``solar_config.schema``
dataclasses.  The single public entry point for runtime config is
``solar_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Override files are deep-merged over the packaged defaults; a key absent
  from the override keeps its default.
* Rates are parsed as ``Decimal`` from their string form; floats never
  reach the billing engine.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  configuration.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError`` with a descriptive message.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from solar_config.schema import (
    BiddingConfig,
    BillingConfig,
    DatabaseConfig,
    DeviceRegistration,
    LoggingConfig,
    SchedulerConfig,
    SolarConfig,
    TelemetryConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``override`` merged in; nested dicts merge, the rest replaces."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"{name}: cannot parse decimal from {value!r}") from exc


def _positive_int(data: dict[str, Any], key: str, section: str) -> int:
    value = int(data[key])
    if value <= 0:
        raise ValueError(f"{section}.{key} must be positive, got {value}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse a DatabaseConfig from a dict."""
    return DatabaseConfig(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int(data, "pool_size", "database"),
        max_overflow=int(data.get("max_overflow", 10)),
        pool_timeout_seconds=_positive_int(data, "pool_timeout_seconds", "database"),
        statement_timeout_ms=_positive_int(data, "statement_timeout_ms", "database"),
    )


def parse_bidding(data: dict[str, Any]) -> BiddingConfig:
    return BiddingConfig(
        default_window_hours=_positive_int(data, "default_window_hours", "bidding"),
    )


def parse_billing(data: dict[str, Any]) -> BillingConfig:
    rate = parse_decimal(data["rate_per_kwh"], "billing.rate_per_kwh")
    credit_rate = parse_decimal(
        data["credit_rate_per_kwh"], "billing.credit_rate_per_kwh"
    )
    if rate < 0 or credit_rate < 0:
        raise ValueError("billing rates must not be negative")
    due_days = int(data["monthly_bill_due_days"])
    if due_days < 0:
        raise ValueError("billing.monthly_bill_due_days must not be negative")
    return BillingConfig(
        rate_per_kwh=rate,
        credit_rate_per_kwh=credit_rate,
        monthly_bill_due_days=due_days,
    )


def parse_scheduler(data: dict[str, Any]) -> SchedulerConfig:
    return SchedulerConfig(
        sweep_interval_seconds=_positive_int(data, "sweep_interval_seconds", "scheduler"),
        overdue_sweep_enabled=bool(data.get("overdue_sweep_enabled", True)),
        monthly_billing_enabled=bool(data.get("monthly_billing_enabled", False)),
    )


def parse_device(data: dict[str, Any]) -> DeviceRegistration:
    """Parse a DeviceRegistration from a dict."""
    return DeviceRegistration(
        token=data["token"],
        device_id=data["device_id"],
        application_id=UUID(str(data["application_id"])),
        secret=data["secret"],
    )


def parse_telemetry(data: dict[str, Any]) -> TelemetryConfig:
    devices = tuple(parse_device(d) for d in data.get("devices") or [])
    tokens = [d.token for d in devices]
    if len(tokens) != len(set(tokens)):
        raise ValueError("telemetry.devices: duplicate device token")
    return TelemetryConfig(devices=devices)


def parse_logging(data: dict[str, Any]) -> LoggingConfig:
    return LoggingConfig(level=str(data.get("level", "INFO")).upper())


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of the merged configuration."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_config(data: dict[str, Any]) -> SolarConfig:
    """Parse the merged configuration dict into a SolarConfig."""
    return SolarConfig(
        database=parse_database(data["database"]),
        bidding=parse_bidding(data["bidding"]),
        billing=parse_billing(data["billing"]),
        scheduler=parse_scheduler(data["scheduler"]),
        telemetry=parse_telemetry(data.get("telemetry") or {}),
        logging=parse_logging(data.get("logging") or {}),
        checksum=compute_checksum(data),
    )
