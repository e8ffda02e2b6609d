"""
Tests for YAML loading and the ``get_active_config`` entrypoint.
"""

from decimal import Decimal

import pytest
import yaml

from billing_config import DEFAULT_CONFIG_PATH, get_active_config
from billing_config.loader import compute_checksum, load_billing_config, load_yaml_file
from billing_config.schema import BillingConfig


class TestLoadYaml:
    def test_empty_file_is_empty_dict(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml_file(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_file(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("billing: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_yaml_file(path)


class TestLoadBillingConfig:
    def test_billing_wrapper(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("billing:\n  lookahead_days: 45\n  sweep:\n    page_size: 10\n")
        config = load_billing_config(path)
        assert config.lookahead_days == 45
        assert config.sweep.page_size == 10

    def test_unwrapped(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("default_currency: EUR\n")
        assert load_billing_config(path).default_currency == "EUR"

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("billing:\n  lookahead_days: -3\n")
        with pytest.raises(ValueError):
            load_billing_config(path)


class TestChecksum:
    def test_deterministic(self):
        assert compute_checksum(BillingConfig()) == compute_checksum(BillingConfig())

    def test_changes_with_content(self):
        assert compute_checksum(BillingConfig()) != compute_checksum(BillingConfig(lookahead_days=31))

    def test_dict_key_order_irrelevant(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


class TestGetActiveConfig:
    def test_packaged_defaults(self):
        config = get_active_config()
        assert config.timezone == "America/Bogota"
        assert config.default_currency == "COP"
        assert config.quota_epsilon == Decimal("0.01")
        assert config.manual.forecast[50] == "forecast_50"
        assert config.sweep.deadline_seconds == 1500

    def test_default_path_points_at_packaged_yaml(self):
        assert DEFAULT_CONFIG_PATH.name == "billing.yaml"
        assert DEFAULT_CONFIG_PATH.exists()

    def test_trace_is_logged(self, tmp_path, captured_logs):
        path = tmp_path / "billing.yaml"
        path.write_text("billing:\n  timezone: Europe/Madrid\n")

        config = get_active_config(path)

        traces = [r for r in captured_logs() if r["message"] == "BILLING_CONFIG_TRACE"]
        assert traces[0]["source"] == str(path)
        assert traces[0]["checksum"] == compute_checksum(config)
        assert traces[0]["timezone"] == "Europe/Madrid"
