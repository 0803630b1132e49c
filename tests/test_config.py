"""
Unit tests for configuration loading and validation.

Tests defaults, YAML sections, environment overrides and strict
rejection of unknown or malformed values.
"""

import os
import tempfile
from dataclasses import FrozenInstanceError

import pytest
import yaml

from traffic_guard.config.loader import (
    AllocationConfig,
    BudgetConfig,
    GridConfig,
    TrafficGuardConfig,
    load_config,
    with_overrides,
)
from traffic_guard.core.budget import BudgetCategory


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
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_file(self):
        """Every setting has a default."""
        config = load_config(environ={})

        assert config == TrafficGuardConfig()
        assert config.grid.cell_size_km == 50.0
        assert config.grid.bbox_padding_km == 10.0
        assert config.cache_ttl.highway == 180
        assert config.cache_ttl.urban == 300
        assert config.cache_ttl.rural == 900
        assert config.budget.daily_limit == 2500
        assert config.budget.hourly_limit == 104
        assert config.provider.api_key is None
        assert config.storage.db_path == "traffic_guard.db"

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "grid": {"cell_size_km": 25, "bbox_padding_km": 5},
            "cache_ttl": {"highway": 120},
            "budget": {"daily_limit": 1000, "hourly_limit": 50},
            "allocation": {"active": 0.5, "prefetch": 0.2, "refresh": 0.2, "buffer": 0.1},
            "provider": {"api_key": "abc123", "timeout_seconds": 3},
            "storage": {"db_path": "/var/lib/traffic.db"},
        }

        config_path = self._write_config(config_data)
        config = load_config(config_path, environ={})

        assert config.grid.cell_size_km == 25.0
        assert config.grid.bbox_padding_km == 5.0
        assert config.cache_ttl.highway == 120
        assert config.cache_ttl.urban == 300
        assert config.budget.daily_limit == 1000
        assert config.allocation.as_mapping()[BudgetCategory.ACTIVE] == 0.5
        assert config.provider.api_key == "abc123"
        assert config.provider.timeout_seconds == 3.0
        assert config.storage.db_path == "/var/lib/traffic.db"

    def test_empty_sections_allowed(self):
        """A section left blank keeps its defaults."""
        config_path = self._write_config({"grid": None, "budget": {"daily_limit": 10}})

        config = load_config(config_path, environ={})

        assert config.grid == GridConfig()
        assert config.budget.daily_limit == 10

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "nope.yaml"), environ={})

    def test_empty_file_raises(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(config_path, environ={})

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("grid: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path, environ={})

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"grid": {}, "geotab": {"user": "x"}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(config_path, environ={})

    def test_unknown_section_key_rejected(self):
        config_path = self._write_config({"grid": {"cell_size": 10}})

        with pytest.raises(ValueError, match="Unknown keys in grid"):
            load_config(config_path, environ={})

    def test_section_must_be_mapping(self):
        config_path = self._write_config({"budget": [1, 2]})

        with pytest.raises(ValueError, match="'budget' must be a dictionary"):
            load_config(config_path, environ={})

    @pytest.mark.parametrize("section, values", [
        ("budget", {"daily_limit": "lots"}),
        ("budget", {"daily_limit": 10.5}),
        ("budget", {"hourly_limit": True}),
        ("grid", {"cell_size_km": "wide"}),
        ("cache_ttl", {"urban": [300]}),
    ])
    def test_invalid_value_types_rejected(self, section, values):
        config_path = self._write_config({section: values})

        with pytest.raises(ValueError, match="has invalid value"):
            load_config(config_path, environ={})

    def test_allocation_must_sum_to_one(self):
        config_path = self._write_config({"allocation": {"active": 0.9}})

        with pytest.raises(ValueError, match="sum to 1.0"):
            load_config(config_path, environ={})

    def test_non_positive_values_rejected(self):
        config_path = self._write_config({"cache_ttl": {"rural": 0}})

        with pytest.raises(ValueError, match="cache_ttl.rural"):
            load_config(config_path, environ={})


class TestEnvironmentOverrides:
    """Test environment variables taking precedence over the file."""

    def test_env_overrides_defaults(self):
        environ = {
            "TRAFFIC_GRID_SIZE_KM": "20",
            "TRAFFIC_CACHE_TTL_HIGHWAY": "90",
            "TOMTOM_DAILY_LIMIT": "500",
            "TOMTOM_API_KEY": "env-key",
            "TRAFFIC_GUARD_DB": "/tmp/env.db",
        }

        config = load_config(environ=environ)

        assert config.grid.cell_size_km == 20.0
        assert config.cache_ttl.highway == 90
        assert config.budget.daily_limit == 500
        assert config.provider.api_key == "env-key"
        assert config.storage.db_path == "/tmp/env.db"

    def test_env_overrides_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "config.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                yaml.dump({"budget": {"daily_limit": 1000, "hourly_limit": 40}}, f)

            config = load_config(config_path, environ={"TOMTOM_DAILY_LIMIT": "750"})

        assert config.budget.daily_limit == 750
        assert config.budget.hourly_limit == 40

    def test_allocation_from_env(self):
        environ = {
            "BUDGET_ALLOCATION_ACTIVE": "0.5",
            "BUDGET_ALLOCATION_PREFETCH": "0.2",
            "BUDGET_ALLOCATION_REFRESH": "0.2",
            "BUDGET_ALLOCATION_BUFFER": "0.1",
        }

        config = load_config(environ=environ)

        assert config.allocation == AllocationConfig(0.5, 0.2, 0.2, 0.1)

    def test_empty_env_value_ignored(self):
        config = load_config(environ={"TOMTOM_DAILY_LIMIT": ""})

        assert config.budget.daily_limit == 2500

    def test_invalid_env_value_rejected(self):
        with pytest.raises(ValueError, match="budget.daily_limit"):
            load_config(environ={"TOMTOM_DAILY_LIMIT": "unlimited"})


class TestOverrides:
    """Test programmatic overrides."""

    def test_with_overrides_replaces_fields(self):
        config = TrafficGuardConfig()

        updated = with_overrides(config, storage={"db_path": "other.db"}, budget={"daily_limit": 5})

        assert updated.storage.db_path == "other.db"
        assert updated.budget.daily_limit == 5
        assert updated.budget.hourly_limit == 104
        assert config.storage.db_path == "traffic_guard.db"

    def test_with_overrides_validates(self):
        with pytest.raises(ValueError, match="daily_limit"):
            with_overrides(TrafficGuardConfig(), budget={"daily_limit": 0})

    def test_config_is_immutable(self):
        config = BudgetConfig()

        with pytest.raises(FrozenInstanceError):
            config.daily_limit = 1
