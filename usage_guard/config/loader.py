"""
Configuration management and loading.

Handles application settings from a YAML file and environment overrides.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from usage_guard.core.rate_limiter import RateLimitTier
from usage_guard.sdk.openai_provider import AVAILABLE_MODELS, DEFAULT_MODEL

ENV_FREE_DAILY_LIMIT = "FREE_USER_DAILY_LIMIT"
ENV_RETENTION_DAYS = "DATA_RETENTION_DAYS"
ENV_DB_PATH = "USAGE_GUARD_DB_PATH"
ENV_TIMEZONE = "USAGE_GUARD_TIMEZONE"


@dataclass(frozen=True)
class DatabaseConfig:
    """Durable store location."""
    path: str = "usage_guard.db"
    timeout: float = 5.0

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path cannot be empty")
        if self.timeout <= 0:
            raise ValueError("database timeout must be > 0")


@dataclass(frozen=True)
class QuotaConfig:
    """Daily quota and read cache settings."""
    free_daily_limit: int = 5
    timezone: str = "UTC"
    cache_ttl_seconds: float = 60.0

    def __post_init__(self):
        if not isinstance(self.free_daily_limit, int):
            raise ValueError("free_daily_limit must be an integer")
        if not 1 <= self.free_daily_limit <= 100:
            raise ValueError("free_daily_limit must be between 1 and 100")
        if not 30 <= self.cache_ttl_seconds <= 300:
            raise ValueError("cache_ttl_seconds must be between 30 and 300")
        if not self.timezone:
            raise ValueError("timezone cannot be empty")


@dataclass(frozen=True)
class RetentionConfig:
    days: int = 30

    def __post_init__(self):
        if not isinstance(self.days, int):
            raise ValueError("retention days must be an integer")
        if not 1 <= self.days <= 365:
            raise ValueError("retention days must be between 1 and 365")


@dataclass(frozen=True)
class BreakerConfig:
    """Circuit breaker thresholds for the completion provider."""
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    success_threshold: int = 2
    half_open_max_calls: int = 1

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")


@dataclass(frozen=True)
class RateLimitConfig:
    free: RateLimitTier = field(default_factory=lambda: RateLimitTier(30, 60.0))
    premium: RateLimitTier = field(default_factory=lambda: RateLimitTier(100, 60.0))


@dataclass(frozen=True)
class ProviderConfig:
    """Completion provider defaults."""
    model: str = DEFAULT_MODEL
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: float = 30.0

    def __post_init__(self):
        if self.model not in AVAILABLE_MODELS:
            raise ValueError(f"model must be one of: {list(AVAILABLE_MODELS)}")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.timeout <= 0:
            raise ValueError("provider timeout must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete usage guard configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    circuit_breaker: BreakerConfig = field(default_factory=BreakerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


_SECTION_KEYS = {
    'database': {'path', 'timeout'},
    'quota': {'free_daily_limit', 'timezone', 'cache_ttl_seconds'},
    'retention': {'days'},
    'circuit_breaker': {'failure_threshold', 'reset_timeout', 'success_threshold', 'half_open_max_calls'},
    'rate_limit': {'free', 'premium'},
    'provider': {'model', 'max_tokens', 'temperature', 'timeout'},
}
_TIER_KEYS = {'max_requests', 'window_seconds'}


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings from an optional YAML file and the environment.

    Strict validation ensures no silent misconfigurations: unknown keys and
    out-of-range values are rejected instead of ignored.

    Args:
        path: Path to YAML configuration file; defaults are used when omitted
        environ: Environment mapping for overrides (defaults to ``os.environ``)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config: Dict[str, Any] = {}
    if path is not None:
        raw_config = _read_yaml(path)

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    settings = Settings(
        database=DatabaseConfig(**sections['database']),
        quota=QuotaConfig(**sections['quota']),
        retention=RetentionConfig(**sections['retention']),
        circuit_breaker=BreakerConfig(**sections['circuit_breaker']),
        rate_limit=RateLimitConfig(**{
            tier: _parse_tier(data, f"rate_limit.{tier}")
            for tier, data in sections['rate_limit'].items()
        }),
        provider=ProviderConfig(**sections['provider']),
    )
    return apply_env_overrides(settings, os.environ if environ is None else environ)


def apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    """Apply environment variable overrides on top of file settings.

    Raises:
        ValueError: If an override is not a valid value
    """
    quota = settings.quota
    if environ.get(ENV_FREE_DAILY_LIMIT):
        quota = replace(quota, free_daily_limit=_env_int(environ, ENV_FREE_DAILY_LIMIT))
    if environ.get(ENV_TIMEZONE):
        quota = replace(quota, timezone=environ[ENV_TIMEZONE])

    retention = settings.retention
    if environ.get(ENV_RETENTION_DAYS):
        retention = replace(retention, days=_env_int(environ, ENV_RETENTION_DAYS))

    database = settings.database
    if environ.get(ENV_DB_PATH):
        database = replace(database, path=environ[ENV_DB_PATH])

    return replace(settings, quota=quota, retention=retention, database=database)


def _read_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")
    return raw_config


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated section mapping, empty if the section is absent."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")

    for key, value in data.items():
        if isinstance(value, bool):
            raise ValueError(f"'{name}.{key}' cannot be a boolean")
    return data


def _parse_tier(data: Any, path: str) -> RateLimitTier:
    """Parse and validate one rate limit tier.

    Args:
        data: Tier configuration data
        path: Path for error messages

    Returns:
        Validated RateLimitTier

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - _TIER_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key in _TIER_KEYS:
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    max_requests = data['max_requests']
    if not isinstance(max_requests, int) or isinstance(max_requests, bool):
        raise ValueError(f"'max_requests' in {path} must be an integer")
    window = data['window_seconds']
    if not isinstance(window, (int, float)) or isinstance(window, bool):
        raise ValueError(f"'window_seconds' in {path} must be a number")

    return RateLimitTier(max_requests=max_requests, window_seconds=float(window))


def _env_int(environ: Mapping[str, str], name: str) -> int:
    try:
        return int(environ[name])
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {environ[name]!r}")
