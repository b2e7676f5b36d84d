"""
Unit tests for configuration loading and validation.

Tests environment resolution and strict validation of the inlet-cost table.
"""

import os
import shutil
import tempfile
from decimal import Decimal

import pytest
import yaml

from llm_meter.config.loader import (
    InletCostTable,
    MeterConfig,
    load_inlet_costs,
    load_meter_config,
)


class TestMeterConfig:
    """Test environment-style settings."""

    def test_defaults(self):
        """Verify an empty environment gives safe defaults."""
        config = load_meter_config({})
        assert config.db_path == "llm_meter.db"
        assert config.default_input_price is None
        assert config.default_output_price is None
        assert config.init_balance == Decimal("0")
        assert config.reset_day == 1
        assert config.auto_reset_enabled
        assert config.configured_reset_day == 1
        assert config.inlet_costs.cost_for("any") == Decimal("0")
        assert config.log_level == "INFO"

    def test_values_are_read(self):
        """Verify every setting is picked up."""
        config = load_meter_config({
            "LLM_METER_DB": "/tmp/meter.db",
            "DEFAULT_MODEL_INPUT_PRICE": "60",
            "DEFAULT_MODEL_OUTPUT_PRICE": "30.5",
            "INIT_BALANCE": "12.5",
            "BALANCE_RESET_DAY": "15",
            "LLM_METER_LOG_LEVEL": "debug",
        })
        assert config.db_path == "/tmp/meter.db"
        assert config.default_input_price == Decimal("60")
        assert config.default_output_price == Decimal("30.5")
        assert config.init_balance == Decimal("12.5")
        assert config.reset_day == 15
        assert config.log_level == "DEBUG"

    @pytest.mark.parametrize("raw", ["", "   ", "abc", "-1", "NaN", "Infinity"])
    def test_unusable_default_price_is_none(self, raw):
        """Verify blank, non-numeric and negative prices are dropped."""
        config = load_meter_config({"DEFAULT_MODEL_INPUT_PRICE": raw})
        assert config.default_input_price is None

    def test_zero_default_price_is_kept(self):
        """Verify zero is a valid default price."""
        config = load_meter_config({"DEFAULT_MODEL_OUTPUT_PRICE": "0"})
        assert config.default_output_price == Decimal("0")

    def test_reset_day_zero_disables(self):
        """Verify a reset day of 0 turns auto-reset off."""
        config = load_meter_config({"BALANCE_RESET_DAY": "0"})
        assert not config.auto_reset_enabled

    @pytest.mark.parametrize("raw,expected", [("31", 31), ("45", 31), ("-3", 1), ("7", 7)])
    def test_reset_day_is_clamped(self, raw, expected):
        """Verify the configured day is clamped to 1..31."""
        config = load_meter_config({"BALANCE_RESET_DAY": raw})
        assert config.configured_reset_day == expected

    def test_negative_reset_day_disables(self):
        """Verify a negative reset day disables auto-reset."""
        assert not MeterConfig(reset_day=-3).auto_reset_enabled

    def test_invalid_reset_day_raises(self):
        """Verify a non-integer reset day is a configuration error."""
        with pytest.raises(ValueError, match="BALANCE_RESET_DAY"):
            load_meter_config({"BALANCE_RESET_DAY": "first"})

    def test_invalid_init_balance_raises(self):
        """Verify a non-numeric initial balance is a configuration error."""
        with pytest.raises(ValueError, match="INIT_BALANCE"):
            load_meter_config({"INIT_BALANCE": "lots"})

    def test_init_balance_above_maximum_raises(self):
        """Verify new users can never start above the balance ceiling."""
        with pytest.raises(ValueError, match="INIT_BALANCE"):
            load_meter_config({"INIT_BALANCE": "2000000"})
        with pytest.raises(ValueError, match="INIT_BALANCE"):
            load_meter_config({"INIT_BALANCE": "1000000.0000"})

    def test_init_balance_at_maximum_is_kept(self):
        config = load_meter_config({"INIT_BALANCE": "999999.9999"})
        assert config.init_balance == Decimal("999999.9999")

    def test_reads_os_environ_by_default(self, monkeypatch):
        """Verify os.environ is used when no mapping is given."""
        monkeypatch.setenv("BALANCE_RESET_DAY", "9")
        assert load_meter_config().reset_day == 9


class TestInletCosts:
    """Test inlet-cost table loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "inlet.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_table_loads(self):
        """Verify per-model credits and the default are loaded."""
        path = self._write_config({"default": 0.001, "models": {"gpt-4o": 0.002}})
        table = load_inlet_costs(path)
        assert table.cost_for("gpt-4o") == Decimal("0.002")
        assert table.cost_for("other") == Decimal("0.001")

    def test_table_via_environment(self):
        """Verify LLM_METER_INLET_COSTS points at the table."""
        path = self._write_config({"models": {"gpt-4o": 0.5}})
        config = load_meter_config({"LLM_METER_INLET_COSTS": path})
        assert config.inlet_costs.cost_for("gpt-4o") == Decimal("0.5")
        assert config.inlet_costs.cost_for("other") == Decimal("0")

    def test_empty_file_is_empty_table(self):
        """Verify an empty file means no credits."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, "w").close()
        assert load_inlet_costs(path) == InletCostTable()

    def test_missing_file_raises(self):
        """Verify a missing file is reported."""
        with pytest.raises(FileNotFoundError):
            load_inlet_costs(os.path.join(self.temp_dir, "nope.yaml"))

    def test_unknown_keys_rejected(self):
        """Verify unknown top-level keys are rejected."""
        path = self._write_config({"models": {}, "extra": 1})
        with pytest.raises(ValueError, match="Unknown inlet cost keys"):
            load_inlet_costs(path)

    def test_negative_amount_rejected(self):
        """Verify credits must be non-negative."""
        path = self._write_config({"models": {"gpt-4o": -1}})
        with pytest.raises(ValueError, match="models.gpt-4o"):
            load_inlet_costs(path)

    def test_non_numeric_amount_rejected(self):
        """Verify credits must be numbers."""
        path = self._write_config({"default": "free"})
        with pytest.raises(ValueError, match="must be a number"):
            load_inlet_costs(path)

    def test_models_must_be_mapping(self):
        """Verify 'models' must be a dictionary."""
        path = self._write_config({"models": ["gpt-4o"]})
        with pytest.raises(ValueError, match="'models' must be a dictionary"):
            load_inlet_costs(path)

    def test_invalid_yaml(self):
        """Verify malformed YAML is reported."""
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("models: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_inlet_costs(path)
