"""
Configuration management and loading.

Handles gateway settings from YAML and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.alerts import (
    DEFAULT_DAILY_CRITICAL,
    DEFAULT_DAILY_WARNING,
    DEFAULT_DEDUP_WINDOW_SECONDS,
    DEFAULT_SPIKE_THRESHOLD,
)
from ..core.cache import DEFAULT_MIN_CONFIDENCE, DEFAULT_TTL_SECONDS
from ..core.clock import get_zone
from ..core.pricing import ModelPricing
from ..core.quota import DEFAULT_DAILY_LIMIT
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import OperationType

DEFAULT_BASE_URL = "https://api.chutes.ai/v1"
DEFAULT_MODEL = "llama-3.1-8b-instant"
DEFAULT_API_KEY_ENV = "AI_API_KEY"
MODEL_OVERRIDE_ENV = "AI_MODEL"


class CacheBackend(Enum):
    """Where cache entries are kept."""
    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class UpstreamConfig:
    """Upstream chat-completions endpoint and retry policy."""
    base_url: str = DEFAULT_BASE_URL
    api_key_env: str = DEFAULT_API_KEY_ENV
    model: str = DEFAULT_MODEL
    timeout_seconds: float = 15.0
    max_retries: int = 2
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 5.0
    jitter: bool = False

    def __post_init__(self):
        """Validate upstream values."""
        if not self.base_url:
            raise ValueError("upstream.base_url must not be empty")
        if not self.model:
            raise ValueError("upstream.model must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("upstream.timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("upstream.max_retries must be >= 0")
        if self.backoff_base_seconds <= 0:
            raise ValueError("upstream.backoff_base_seconds must be > 0")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("upstream.backoff_cap_seconds must be >= backoff_base_seconds")

    def api_key(self) -> Optional[str]:
        """API key from the configured environment variable."""
        return os.environ.get(self.api_key_env) or None


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket shared by all upstream calls."""
    capacity: int = 30
    refill_period_seconds: float = 60.0

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("rate_limit.capacity must be > 0")
        if self.refill_period_seconds <= 0:
            raise ValueError("rate_limit.refill_period_seconds must be > 0")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 120.0

    def __post_init__(self):
        if self.failure_threshold <= 0:
            raise ValueError("circuit_breaker.failure_threshold must be > 0")
        if self.reset_timeout_seconds <= 0:
            raise ValueError("circuit_breaker.reset_timeout_seconds must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Response cache settings."""
    enabled: bool = True
    backend: CacheBackend = CacheBackend.MEMORY
    default_ttl_seconds: int = DEFAULT_TTL_SECONDS
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    ttl_seconds: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.default_ttl_seconds <= 0:
            raise ValueError("cache.default_ttl_seconds must be > 0")
        if not 0 <= self.min_confidence <= 1:
            raise ValueError("cache.min_confidence must be between 0 and 1")
        for operation, ttl in self.ttl_seconds.items():
            if ttl <= 0:
                raise ValueError(f"cache.ttl_seconds.{operation} must be > 0")


@dataclass(frozen=True)
class UsageConfig:
    """Usage ledger and cost alert settings."""
    enabled: bool = True
    batch_size: int = 10
    max_pending: int = 1000
    alerts_enabled: bool = True
    alert_daily_warning: float = DEFAULT_DAILY_WARNING
    alert_daily_critical: float = DEFAULT_DAILY_CRITICAL
    alert_spike: float = DEFAULT_SPIKE_THRESHOLD
    alert_dedup_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("usage.batch_size must be > 0")
        if self.max_pending < self.batch_size:
            raise ValueError("usage.max_pending must be >= usage.batch_size")
        if self.alert_daily_warning <= 0 or self.alert_spike <= 0:
            raise ValueError("usage alert thresholds must be > 0")
        if self.alert_daily_critical < self.alert_daily_warning:
            raise ValueError("usage.alert_daily_critical must be >= usage.alert_daily_warning")
        if self.alert_dedup_seconds < 0:
            raise ValueError("usage.alert_dedup_seconds must be >= 0")


@dataclass(frozen=True)
class QuotaConfig:
    """Daily interaction quota settings."""
    enabled: bool = True
    daily_limit: int = DEFAULT_DAILY_LIMIT
    timezone: str = "UTC"
    enforce: bool = False

    def __post_init__(self):
        if self.daily_limit <= 0:
            raise ValueError("quota.daily_limit must be > 0")
        get_zone(self.timezone)


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)


_SECTION_KEYS = {
    "upstream": {
        "base_url", "api_key_env", "model", "timeout_seconds", "max_retries",
        "backoff_base_seconds", "backoff_cap_seconds", "jitter",
    },
    "rate_limit": {"capacity", "refill_period_seconds"},
    "circuit_breaker": {"failure_threshold", "reset_timeout_seconds"},
    "cache": {"enabled", "backend", "default_ttl_seconds", "min_confidence", "ttl_seconds"},
    "usage": {
        "enabled", "batch_size", "max_pending", "alerts_enabled", "alert_daily_warning",
        "alert_daily_critical", "alert_spike", "alert_dedup_seconds",
    },
    "quota": {"enabled", "daily_limit", "timezone", "enforce"},
    "storage": {"db_path"},
}


def load_gateway_config(path: Optional[str] = None) -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file.

    Every section is optional; missing values take their defaults. The
    ``AI_MODEL`` environment variable overrides ``upstream.model``.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Gateway config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = set(_SECTION_KEYS) | {"pricing"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    upstream_data = sections["upstream"]
    model_override = os.environ.get(MODEL_OVERRIDE_ENV)
    if model_override:
        upstream_data["model"] = model_override

    upstream = UpstreamConfig(
        base_url=_string(upstream_data, "base_url", "upstream", DEFAULT_BASE_URL),
        api_key_env=_string(upstream_data, "api_key_env", "upstream", DEFAULT_API_KEY_ENV),
        model=_string(upstream_data, "model", "upstream", DEFAULT_MODEL),
        timeout_seconds=_number(upstream_data, "timeout_seconds", "upstream", 15.0),
        max_retries=_integer(upstream_data, "max_retries", "upstream", 2),
        backoff_base_seconds=_number(upstream_data, "backoff_base_seconds", "upstream", 1.0),
        backoff_cap_seconds=_number(upstream_data, "backoff_cap_seconds", "upstream", 5.0),
        jitter=_boolean(upstream_data, "jitter", "upstream", False),
    )

    rate_data = sections["rate_limit"]
    rate_limit = RateLimitConfig(
        capacity=_integer(rate_data, "capacity", "rate_limit", 30),
        refill_period_seconds=_number(rate_data, "refill_period_seconds", "rate_limit", 60.0),
    )

    breaker_data = sections["circuit_breaker"]
    circuit_breaker = CircuitBreakerConfig(
        failure_threshold=_integer(breaker_data, "failure_threshold", "circuit_breaker", 5),
        reset_timeout_seconds=_number(breaker_data, "reset_timeout_seconds", "circuit_breaker", 120.0),
    )

    cache_data = sections["cache"]
    backend_str = _string(cache_data, "backend", "cache", CacheBackend.MEMORY.value)
    try:
        backend = CacheBackend(backend_str.lower())
    except ValueError:
        valid_backends = [backend.value for backend in CacheBackend]
        raise ValueError(f"'backend' in cache must be one of: {valid_backends}")

    cache = CacheConfig(
        enabled=_boolean(cache_data, "enabled", "cache", True),
        backend=backend,
        default_ttl_seconds=_integer(cache_data, "default_ttl_seconds", "cache", DEFAULT_TTL_SECONDS),
        min_confidence=_number(cache_data, "min_confidence", "cache", DEFAULT_MIN_CONFIDENCE),
        ttl_seconds=_parse_ttl_overrides(cache_data.get("ttl_seconds", {})),
    )

    usage_data = sections["usage"]
    usage = UsageConfig(
        enabled=_boolean(usage_data, "enabled", "usage", True),
        batch_size=_integer(usage_data, "batch_size", "usage", 10),
        max_pending=_integer(usage_data, "max_pending", "usage", 1000),
        alerts_enabled=_boolean(usage_data, "alerts_enabled", "usage", True),
        alert_daily_warning=_number(usage_data, "alert_daily_warning", "usage", DEFAULT_DAILY_WARNING),
        alert_daily_critical=_number(usage_data, "alert_daily_critical", "usage", DEFAULT_DAILY_CRITICAL),
        alert_spike=_number(usage_data, "alert_spike", "usage", DEFAULT_SPIKE_THRESHOLD),
        alert_dedup_seconds=_integer(usage_data, "alert_dedup_seconds", "usage", DEFAULT_DEDUP_WINDOW_SECONDS),
    )

    quota_data = sections["quota"]
    quota = QuotaConfig(
        enabled=_boolean(quota_data, "enabled", "quota", True),
        daily_limit=_integer(quota_data, "daily_limit", "quota", DEFAULT_DAILY_LIMIT),
        timezone=_string(quota_data, "timezone", "quota", "UTC"),
        enforce=_boolean(quota_data, "enforce", "quota", False),
    )

    storage = StorageConfig(
        db_path=_string(sections["storage"], "db_path", "storage", DEFAULT_DB_PATH),
    )

    return GatewayConfig(
        upstream=upstream,
        rate_limit=rate_limit,
        circuit_breaker=circuit_breaker,
        cache=cache,
        usage=usage,
        quota=quota,
        storage=storage,
        pricing=_parse_pricing(raw_config.get("pricing", {})),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    """Fetch one optional section and reject unknown keys in it."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return dict(data)


def _string(data: Dict, key: str, path: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _number(data: Dict, key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _boolean(data: Dict, key: str, path: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _parse_ttl_overrides(data: Any) -> Dict[str, int]:
    """Parse per-operation cache TTLs.

    Raises:
        ValueError: If an operation name is unknown or a TTL is not an integer
    """
    if not isinstance(data, dict):
        raise ValueError("'ttl_seconds' in cache must be a dictionary")

    valid_operations = {operation.value for operation in OperationType}
    ttls = {}
    for operation, ttl in data.items():
        if operation not in valid_operations:
            raise ValueError(
                f"Unknown operation '{operation}' in cache.ttl_seconds; "
                f"expected one of: {sorted(valid_operations)}"
            )
        ttls[operation] = _integer(data, operation, "cache.ttl_seconds", 0)
    return ttls


def _parse_pricing(data: Any) -> Dict[str, ModelPricing]:
    """Parse per-model pricing overrides (USD per one million tokens).

    Raises:
        ValueError: If a model entry is malformed or a price is negative
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    allowed_keys = {"prompt_per_million", "completion_per_million"}
    prices = {}
    for model, model_data in data.items():
        path = f"pricing.{model}"
        if not isinstance(model_data, dict):
            raise ValueError(f"Model '{model}' in pricing must be a dictionary")

        unknown_keys = set(model_data.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing = allowed_keys - set(model_data.keys())
        if missing:
            raise ValueError(f"Missing required {sorted(missing)} in {path}")

        prices[str(model)] = ModelPricing(
            prompt_cost_per_1m=_price(model_data["prompt_per_million"], f"{path}.prompt_per_million"),
            completion_cost_per_1m=_price(model_data["completion_per_million"], f"{path}.completion_per_million"),
        )
    return prices


def _price(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        # str() keeps YAML floats like 0.05 exact.
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if price < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return price
