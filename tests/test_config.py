"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for report settings.
"""

import os
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest
import yaml

from ccost.config.loader import (
    DEFAULT_PROJECTS_PATH,
    ExchangeRateConfig,
    LedgerConfig,
    Settings,
    load_config,
    parse_settings,
)
from ccost.core.errors import ConfigError
from ccost.core.pricing import PRICING_TABLE, CostMode


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "projects_path": "/data/logs",
            "database_path": os.path.join(self.temp_dir, "ccost.db"),
            "cost_mode": "calculate",
            "currency": "eur",
            "timezone": "Europe/Berlin",
            "daily_cutoff_hour": 4,
            "workers": 2,
            "ledger": {"persistent": False, "flush_every": 50},
            "exchange_rates": {"ttl_hours": 12, "timeout_seconds": 5},
        }

        settings = load_config(self._write_config(config_data))

        assert settings.projects_path == "/data/logs"
        assert settings.cost_mode is CostMode.CALCULATE
        assert settings.currency == "EUR"
        assert settings.timezone == "Europe/Berlin"
        assert settings.daily_cutoff_hour == 4
        assert settings.workers == 2
        assert settings.ledger == LedgerConfig(persistent=False, flush_every=50)
        assert settings.exchange_rates.ttl == timedelta(hours=12)
        assert settings.exchange_rates.timeout_seconds == 5.0

    def test_no_path_returns_defaults(self):
        settings = load_config(None)
        assert settings == Settings()
        assert settings.projects_path == DEFAULT_PROJECTS_PATH
        assert settings.cost_mode is CostMode.AUTO
        assert settings.pricing is PRICING_TABLE

    def test_empty_file_returns_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, "w").close()
        assert load_config(config_path) == Settings()

    def test_missing_file_raises(self):
        """Test that a missing config file raises ConfigError."""
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that malformed YAML raises ConfigError."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("currency: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_path)

    def test_non_mapping_root_raises(self):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(self._write_config(["a", "b"]))

    def test_unknown_keys_raise(self):
        """Test that unknown keys are rejected."""
        with pytest.raises(ConfigError, match="Unknown configuration keys"):
            load_config(self._write_config({"currency": "USD", "budget": 10}))

    def test_unknown_nested_keys_raise(self):
        with pytest.raises(ConfigError, match="Unknown keys in ledger"):
            parse_settings({"ledger": {"persistent": True, "path": "/tmp"}})


class TestValueValidation:
    """Test validation of individual settings."""

    @pytest.mark.parametrize("raw", [
        {"cost_mode": "estimate"},
        {"currency": "EURO"},
        {"currency": ""},
        {"timezone": "Not/A_Zone"},
        {"daily_cutoff_hour": 24},
        {"daily_cutoff_hour": "4"},
        {"workers": 0},
        {"workers": True},
        {"ledger": {"persistent": "yes"}},
        {"ledger": {"flush_every": 0}},
        {"ledger": []},
        {"exchange_rates": {"ttl_hours": 0}},
        {"exchange_rates": {"timeout_seconds": "fast"}},
        {"exchange_rates": {"ttl_hours": float("nan")}},
        {"exchange_rates": {"timeout_seconds": float("inf")}},
    ])
    def test_invalid_values_rejected(self, raw):
        with pytest.raises(ConfigError):
            parse_settings(raw)

    def test_config_error_is_value_error(self):
        """Test that config errors can be caught as ValueError."""
        with pytest.raises(ValueError):
            parse_settings({"workers": -1})

    def test_direct_construction_validated(self):
        with pytest.raises(ConfigError):
            ExchangeRateConfig(ttl_hours=-1)


class TestPricingOverrides:
    """Test pricing overrides from configuration."""

    def test_model_override_added(self):
        """Test that configured models extend the built-in table."""
        settings = parse_settings({
            "pricing": {
                "models": {
                    "claude-custom": {"input": 2, "output": "10.5", "cache": 0.2},
                },
            },
        })

        custom = settings.pricing.rate("claude-custom")
        assert custom.input_per_mtok == Decimal("2")
        assert custom.output_per_mtok == Decimal("10.5")
        assert custom.cache_per_mtok == Decimal("0.2")
        assert settings.pricing.rate("claude-opus-4-20250514") == PRICING_TABLE.rate("claude-opus-4-20250514")

    def test_default_tier_override(self):
        settings = parse_settings({"pricing": {"default": {"input": 1, "output": 2, "cache": 0}}})
        fallback = settings.pricing.rate("claude-unreleased")
        assert fallback.output_per_mtok == Decimal("2")

    def test_missing_rate_raises(self):
        with pytest.raises(ConfigError, match="Missing required 'cache'"):
            parse_settings({"pricing": {"models": {"m": {"input": 1, "output": 2}}}})

    def test_negative_rate_raises(self):
        with pytest.raises(ConfigError, match="must be >= 0"):
            parse_settings({"pricing": {"models": {"m": {"input": -1, "output": 2, "cache": 0}}}})

    @pytest.mark.parametrize("value", ["nan", "NaN", "inf", "-Infinity", float("inf")])
    def test_non_finite_rate_raises(self, value):
        """Test that NaN and infinite rates are configuration errors."""
        with pytest.raises(ConfigError, match="finite"):
            parse_settings({"pricing": {"models": {"m": {"input": value, "output": 2, "cache": 0}}}})

    def test_non_numeric_rate_raises(self):
        with pytest.raises(ConfigError):
            parse_settings({"pricing": {"models": {"m": {"input": "cheap", "output": 2, "cache": 0}}}})
