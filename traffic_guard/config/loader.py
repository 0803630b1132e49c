"""
Configuration management and loading.

Handles the YAML settings file and environment variable overrides.
"""

import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from traffic_guard.core.budget import BudgetCategory


@dataclass(frozen=True)
class GridConfig:
    """Grid cell size and road classification thresholds."""
    cell_size_km: float = 50.0
    highway_speed_threshold: float = 90.0
    urban_speed_threshold: float = 50.0
    bbox_padding_km: float = 10.0

    def __post_init__(self):
        """Validate grid values."""
        if self.cell_size_km <= 0:
            raise ValueError("cell_size_km must be > 0")
        if self.bbox_padding_km < 0:
            raise ValueError("bbox_padding_km cannot be negative")
        if self.urban_speed_threshold >= self.highway_speed_threshold:
            raise ValueError("urban_speed_threshold must be below highway_speed_threshold")


@dataclass(frozen=True)
class CacheTtlConfig:
    """Cache freshness window in seconds per road type."""
    highway: int = 180
    urban: int = 300
    rural: int = 900

    def __post_init__(self):
        """Validate TTLs are positive."""
        for f in fields(self):
            if getattr(self, f.name) <= 0:
                raise ValueError(f"cache_ttl.{f.name} must be > 0")


@dataclass(frozen=True)
class BudgetConfig:
    """Provider request quotas."""
    daily_limit: int = 2500
    hourly_limit: int = 104

    def __post_init__(self):
        """Validate quota values are positive."""
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if self.hourly_limit <= 0:
            raise ValueError("hourly_limit must be > 0")


@dataclass(frozen=True)
class AllocationConfig:
    """Share of the daily quota per budget category."""
    active: float = 0.40
    prefetch: float = 0.24
    refresh: float = 0.28
    buffer: float = 0.08

    def __post_init__(self):
        """Validate fractions are non-negative and sum to 1.0."""
        values = [getattr(self, f.name) for f in fields(self)]
        if any(v < 0 for v in values):
            raise ValueError("allocation fractions cannot be negative")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValueError(f"allocation fractions must sum to 1.0, got {sum(values):.4f}")

    def as_mapping(self) -> Dict[BudgetCategory, float]:
        return {BudgetCategory(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ProviderConfig:
    """Traffic provider connection settings."""
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Persistence settings."""
    db_path: str = "traffic_guard.db"


@dataclass(frozen=True)
class TrafficGuardConfig:
    """Complete Traffic Guard configuration."""
    grid: GridConfig = field(default_factory=GridConfig)
    cache_ttl: CacheTtlConfig = field(default_factory=CacheTtlConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


_SECTIONS = {
    "grid": GridConfig,
    "cache_ttl": CacheTtlConfig,
    "budget": BudgetConfig,
    "allocation": AllocationConfig,
    "provider": ProviderConfig,
    "storage": StorageConfig,
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "TRAFFIC_GRID_SIZE_KM": ("grid", "cell_size_km"),
    "TRAFFIC_CACHE_TTL_HIGHWAY": ("cache_ttl", "highway"),
    "TRAFFIC_CACHE_TTL_URBAN": ("cache_ttl", "urban"),
    "TRAFFIC_CACHE_TTL_RURAL": ("cache_ttl", "rural"),
    "TOMTOM_DAILY_LIMIT": ("budget", "daily_limit"),
    "TOMTOM_HOURLY_LIMIT": ("budget", "hourly_limit"),
    "BUDGET_ALLOCATION_ACTIVE": ("allocation", "active"),
    "BUDGET_ALLOCATION_PREFETCH": ("allocation", "prefetch"),
    "BUDGET_ALLOCATION_REFRESH": ("allocation", "refresh"),
    "BUDGET_ALLOCATION_BUFFER": ("allocation", "buffer"),
    "TOMTOM_API_KEY": ("provider", "api_key"),
    "TRAFFIC_GUARD_DB": ("storage", "db_path"),
}


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> TrafficGuardConfig:
    """Load and validate configuration from YAML and the environment.

    Every setting is optional. Values come from the built-in defaults,
    then the YAML file (if given), then environment variables.

    Args:
        path: Optional path to YAML configuration file
        environ: Environment to read overrides from (defaults to os.environ)

    Returns:
        Validated TrafficGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config: Dict[str, Dict[str, Any]] = {}
    if path is not None:
        raw_config = _read_yaml(path)

    sections = {
        name: dict(raw_config.get(name) or {}) for name in _SECTIONS
    }
    env = os.environ if environ is None else environ
    for var, (section, key) in ENV_OVERRIDES.items():
        if env.get(var):
            sections[section][key] = env[var]

    return TrafficGuardConfig(**{
        name: _parse_section(name, cls, sections[name])
        for name, cls in _SECTIONS.items()
    })


def _read_yaml(path: str) -> Dict[str, Dict[str, Any]]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Traffic Guard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping of sections")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    for name, data in raw_config.items():
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")

    return raw_config


def _parse_section(name: str, cls, data: Dict[str, Any]):
    """Convert one section's raw values to the dataclass field types.

    Raises:
        ValueError: On unknown keys or values of the wrong type
    """
    field_types = {f.name: f.type for f in fields(cls)}
    unknown_keys = set(data) - set(field_types)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = field_types[key]
        try:
            if expected in (int, "int"):
                if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                    raise ValueError
                values[key] = int(value)
            elif expected in (float, "float"):
                if isinstance(value, bool):
                    raise ValueError
                values[key] = float(value)
            else:
                values[key] = None if value is None else str(value)
        except (TypeError, ValueError):
            raise ValueError(f"'{name}.{key}' has invalid value: {value!r}")

    return cls(**values)


def with_overrides(config: TrafficGuardConfig, **sections: Dict[str, Any]) -> TrafficGuardConfig:
    """Copy of ``config`` with selected section fields replaced."""
    updated = {
        name: replace(getattr(config, name), **values)
        for name, values in sections.items()
    }
    return replace(config, **updated)
