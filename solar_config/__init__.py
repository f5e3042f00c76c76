"""
solar_config -- single public entrypoint for portal configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    directly.  Returns a frozen ``SolarConfig``.

Architecture position:
    Configuration -- sits above ``solar_kernel`` and below
    ``solar_batch`` / ``solar_services`` / ``scripts``.  The kernel MUST
    NEVER import from ``solar_config``; outer layers pass the values they
    need into kernel services.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Packaged ``defaults.yaml`` enumerates every key; an override file is
      deep-merged on top.
    - Deterministic: the same files always produce the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.
"""

from __future__ import annotations

import logging
from pathlib import Path

from solar_config.loader import deep_merge, load_yaml_file, parse_config
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

_logger = logging.getLogger("solar_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

__all__ = [
    "BiddingConfig",
    "BillingConfig",
    "DatabaseConfig",
    "DeviceRegistration",
    "LoggingConfig",
    "SchedulerConfig",
    "SolarConfig",
    "TelemetryConfig",
    "get_active_config",
]


def get_active_config(config_path: Path | str | None = None) -> SolarConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Optional YAML file deep-merged over the packaged
            defaults.

    Returns:
        SolarConfig -- frozen, validated.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        ValueError: If a value fails validation.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if config_path is not None:
        data = deep_merge(data, load_yaml_file(Path(config_path)))

    config = parse_config(data)

    _logger.info(
        "config_loaded",
        extra={
            "config_path": str(config_path) if config_path else None,
            "checksum": config.checksum,
            "device_count": len(config.telemetry.devices),
        },
    )
    return config
