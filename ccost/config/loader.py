"""
Configuration management and loading.

Reads report settings from a YAML file with strict validation. Writing or
editing configuration files is left to the user.
"""

import math
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ccost.core.currency import DEFAULT_TIMEOUT_SECONDS, ECB_DAILY_URL
from ccost.core.errors import ConfigError
from ccost.core.pricing import PRICING_TABLE, CostMode, ModelPricing, PricingTable
from ccost.core.timezone import resolve_timezone
from ccost.storage.db import DEFAULT_DB_PATH

DEFAULT_PROJECTS_PATH = "~/.claude/projects"


@dataclass(frozen=True)
class LedgerConfig:
    """Dedup ledger persistence settings."""
    persistent: bool = True
    flush_every: int = 500

    def __post_init__(self):
        """Validate flush interval."""
        if self.flush_every <= 0:
            raise ConfigError("ledger.flush_every must be > 0")


@dataclass(frozen=True)
class ExchangeRateConfig:
    """Exchange-rate cache settings."""
    ttl_hours: float = 24
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    source_url: str = ECB_DAILY_URL

    def __post_init__(self):
        """Validate durations are positive."""
        if self.ttl_hours <= 0:
            raise ConfigError("exchange_rates.ttl_hours must be > 0")
        if self.timeout_seconds <= 0:
            raise ConfigError("exchange_rates.timeout_seconds must be > 0")

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)


@dataclass(frozen=True)
class Settings:
    """Complete report configuration."""
    projects_path: str = DEFAULT_PROJECTS_PATH
    database_path: str = DEFAULT_DB_PATH
    cost_mode: CostMode = CostMode.AUTO
    currency: str = "USD"
    timezone: str = "UTC"
    daily_cutoff_hour: int = 0
    workers: int = 4
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    exchange_rates: ExchangeRateConfig = field(default_factory=ExchangeRateConfig)
    pricing: PricingTable = PRICING_TABLE

    def __post_init__(self):
        """Validate scalar settings."""
        if not 0 <= self.daily_cutoff_hour <= 23:
            raise ConfigError(f"daily_cutoff_hour must be 0-23, got: {self.daily_cutoff_hour}")
        if self.workers <= 0:
            raise ConfigError("workers must be > 0")
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ConfigError(f"currency must be a 3-letter code, got: {self.currency!r}")
        resolve_timezone(self.timezone)

    @property
    def resolved_projects_path(self) -> Path:
        return Path(self.projects_path).expanduser()


_TOP_LEVEL_KEYS = {
    "projects_path", "database_path", "cost_mode", "currency", "timezone",
    "daily_cutoff_hour", "workers", "ledger", "exchange_rates", "pricing",
}


def load_config(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Args:
        path: Path to YAML configuration file; defaults are returned when None

    Returns:
        Validated Settings object

    Raises:
        ConfigError: If the file is missing, not valid YAML, or invalid
    """
    if path is None:
        return Settings()

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ConfigError("Configuration root must be a mapping")
    return parse_settings(raw_config)


def parse_settings(raw_config: Dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed mapping.

    Raises:
        ConfigError: If any key is unknown or any value invalid
    """
    unknown_keys = set(raw_config.keys()) - _TOP_LEVEL_KEYS
    if unknown_keys:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    values: Dict[str, Any] = {}
    for key in ("projects_path", "database_path", "currency", "timezone"):
        if key in raw_config:
            values[key] = _require_str(raw_config[key], key)
    if "currency" in values:
        values["currency"] = values["currency"].upper()

    if "cost_mode" in raw_config:
        mode = _require_str(raw_config["cost_mode"], "cost_mode")
        try:
            values["cost_mode"] = CostMode(mode.lower())
        except ValueError:
            valid = [m.value for m in CostMode]
            raise ConfigError(f"'cost_mode' must be one of: {valid}")

    for key in ("daily_cutoff_hour", "workers"):
        if key in raw_config:
            values[key] = _require_int(raw_config[key], key)

    if "ledger" in raw_config:
        values["ledger"] = _parse_ledger(raw_config["ledger"])
    if "exchange_rates" in raw_config:
        values["exchange_rates"] = _parse_exchange_rates(raw_config["exchange_rates"])
    if "pricing" in raw_config:
        values["pricing"] = _parse_pricing(raw_config["pricing"])

    return Settings(**values)


def _parse_ledger(data: Any) -> LedgerConfig:
    _require_mapping(data, "ledger", {"persistent", "flush_every"})
    values: Dict[str, Any] = {}
    if "persistent" in data:
        if not isinstance(data["persistent"], bool):
            raise ConfigError("'ledger.persistent' must be true or false")
        values["persistent"] = data["persistent"]
    if "flush_every" in data:
        values["flush_every"] = _require_int(data["flush_every"], "ledger.flush_every")
    return LedgerConfig(**values)


def _parse_exchange_rates(data: Any) -> ExchangeRateConfig:
    _require_mapping(data, "exchange_rates", {"ttl_hours", "timeout_seconds", "source_url"})
    values: Dict[str, Any] = {}
    for key in ("ttl_hours", "timeout_seconds"):
        if key in data:
            values[key] = _require_number(data[key], f"exchange_rates.{key}")
    if "source_url" in data:
        values["source_url"] = _require_str(data["source_url"], "exchange_rates.source_url")
    return ExchangeRateConfig(**values)


def _parse_pricing(data: Any) -> PricingTable:
    """Parse pricing overrides layered on top of the built-in table."""
    _require_mapping(data, "pricing", {"default", "models"})
    default = None
    if "default" in data:
        default = _parse_model_pricing(data["default"], "pricing.default")

    models = data.get("models", {}) or {}
    if not isinstance(models, dict):
        raise ConfigError("'pricing.models' must be a dictionary")
    prices = {
        str(name): _parse_model_pricing(rates, f"pricing.models.{name}")
        for name, rates in models.items()
    }
    return PRICING_TABLE.with_overrides(prices, default=default)


def _parse_model_pricing(data: Any, path: str) -> ModelPricing:
    _require_mapping(data, path, {"input", "output", "cache"})
    rates = {}
    for key in ("input", "output", "cache"):
        if key not in data:
            raise ConfigError(f"Missing required '{key}' in {path}")
        rate = _require_decimal(data[key], f"{path}.{key}")
        if rate < 0:
            raise ConfigError(f"'{key}' in {path} must be >= 0")
        rates[key] = rate
    return ModelPricing(
        input_per_mtok=rates["input"],
        output_per_mtok=rates["output"],
        cache_per_mtok=rates["cache"],
    )


def _require_mapping(data: Any, path: str, allowed_keys: set) -> None:
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigError(f"Unknown keys in {path}: {sorted(unknown_keys)}")


def _require_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{path}' must be a non-empty string")
    return value.strip()


def _require_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{path}' must be an integer")
    return value


def _require_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{path}' must be a number")
    if not math.isfinite(value):
        raise ConfigError(f"'{path}' must be a finite number")
    return float(value)


def _require_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"'{path}' must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"'{path}' must be a number")
    if not number.is_finite():
        raise ConfigError(f"'{path}' must be a finite number")
    return number
