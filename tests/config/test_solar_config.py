"""
Tests for solar_config: packaged defaults, override merging, validation.
"""

from decimal import Decimal
from uuid import UUID

import pytest
import yaml

from solar_config import DEFAULTS_PATH, get_active_config
from solar_config.loader import deep_merge, load_yaml_file, parse_config

DEVICE_APP = "00000000-0000-0000-0000-000000000001"


def write_override(tmp_path, data) -> str:
    path = tmp_path / "override.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestDefaults:

    def test_packaged_defaults(self):
        config = get_active_config()

        assert config.bidding.default_window_hours == 48
        assert config.billing.rate_per_kwh == Decimal("52")
        assert config.billing.credit_rate_per_kwh == Decimal("30")
        assert config.billing.monthly_bill_due_days == 14
        assert config.scheduler.sweep_interval_seconds == 300
        assert config.scheduler.monthly_billing_enabled is False
        assert config.telemetry.devices == ()
        assert config.logging.level == "INFO"

    def test_checksum_is_deterministic(self):
        assert get_active_config().checksum == get_active_config().checksum
        assert len(get_active_config().checksum) == 64

    def test_config_is_frozen(self):
        config = get_active_config()
        with pytest.raises(AttributeError):
            config.billing.rate_per_kwh = Decimal("1")


class TestOverride:

    def test_override_is_deep_merged(self, tmp_path):
        path = write_override(tmp_path, {"billing": {"rate_per_kwh": "60.5"}})

        config = get_active_config(path)

        assert config.billing.rate_per_kwh == Decimal("60.5")
        # untouched sibling keys keep their defaults
        assert config.billing.credit_rate_per_kwh == Decimal("30")
        assert config.bidding.default_window_hours == 48
        assert config.checksum != get_active_config().checksum

    def test_float_rates_parse_exactly(self, tmp_path):
        path = write_override(tmp_path, {"billing": {"credit_rate_per_kwh": 30.1}})
        assert get_active_config(path).billing.credit_rate_per_kwh == Decimal("30.1")

    def test_devices(self, tmp_path):
        path = write_override(
            tmp_path,
            {
                "telemetry": {
                    "devices": [
                        {
                            "token": "tok-a",
                            "device_id": "DEV-A",
                            "application_id": DEVICE_APP,
                            "secret": "s3cret",
                        }
                    ]
                }
            },
        )

        telemetry = get_active_config(path).telemetry

        device = telemetry.device_for_token("tok-a")
        assert device.device_id == "DEV-A"
        assert device.application_id == UUID(DEVICE_APP)
        assert telemetry.device_for_token("tok-b") is None

    def test_missing_override_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "missing.yaml")


class TestValidation:

    def _parse_with(self, override):
        return parse_config(deep_merge(load_yaml_file(DEFAULTS_PATH), override))

    def test_negative_rate(self):
        with pytest.raises(ValueError):
            self._parse_with({"billing": {"rate_per_kwh": "-1"}})

    def test_non_numeric_rate(self):
        with pytest.raises(ValueError, match="rate_per_kwh"):
            self._parse_with({"billing": {"rate_per_kwh": "cheap"}})

    def test_zero_window(self):
        with pytest.raises(ValueError, match="default_window_hours"):
            self._parse_with({"bidding": {"default_window_hours": 0}})

    def test_duplicate_device_token(self):
        device = {
            "token": "tok",
            "device_id": "DEV",
            "application_id": DEVICE_APP,
            "secret": "x",
        }
        with pytest.raises(ValueError, match="duplicate"):
            self._parse_with({"telemetry": {"devices": [device, dict(device)]}})

    def test_missing_section(self):
        data = load_yaml_file(DEFAULTS_PATH)
        del data["billing"]
        with pytest.raises(KeyError):
            parse_config(data)


class TestDeepMerge:

    def test_nested_dicts_merge_and_scalars_replace(self):
        base = {"a": {"x": 1, "y": 2}, "b": [1, 2]}
        merged = deep_merge(base, {"a": {"y": 3}, "b": [9]})

        assert merged == {"a": {"x": 1, "y": 3}, "b": [9]}
        assert base == {"a": {"x": 1, "y": 2}, "b": [1, 2]}
