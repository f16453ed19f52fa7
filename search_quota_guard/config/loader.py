"""
Configuration management and loading.

Handles governance thresholds, API settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.governor import GovernancePolicy
from ..storage.db import DEFAULT_DB_PATH

DEFAULT_BASE_URL = "https://app.ticketmaster.com/discovery/v2"


@dataclass(frozen=True)
class CacheConfig:
    """Response cache settings."""
    ttl_seconds: float = 300
    max_entries: Optional[int] = 256

    def __post_init__(self):
        """Validate cache values are positive."""
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if self.max_entries is not None and self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Consecutive-failure backoff settings."""
    failure_threshold: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000

    def __post_init__(self):
        """Validate breaker values."""
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.base_delay_ms <= 0 or self.max_delay_ms <= 0:
            raise ValueError("backoff delays must be > 0")
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError("base_delay_ms must not exceed max_delay_ms")


@dataclass(frozen=True)
class ApiConfig:
    """Discovery API endpoint settings."""
    base_url: str = DEFAULT_BASE_URL
    allowed_upstream_prefix: str = DEFAULT_BASE_URL + "/"
    api_key_env: str = "DISCOVERY_API_KEY"
    timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate API values."""
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        if not self.api_key_env:
            raise ValueError("api_key_env cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Ledger storage settings."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class Settings:
    """Complete search quota guard configuration."""
    policy: GovernancePolicy = field(default_factory=GovernancePolicy)
    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api_key: Optional[str] = None


_POLICY_COUNT_KEYS = {
    'daily_limit', 'session_hard_limit', 'session_warning_threshold',
    'session_confirmation_threshold', 'session_soft_limit',
    'rapid_fire_limit', 'max_recent_calls',
}
_POLICY_SECONDS_KEYS = {
    'duplicate_window_seconds': 'duplicate_window',
    'rapid_fire_window_seconds': 'rapid_fire_window',
    'lockout_seconds': 'lockout_duration',
}


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    and out-of-range values are rejected so a typo never silently loosens
    a limit.

    Args:
        path: Path to YAML configuration file; None uses defaults
        environ: Environment to read the API key from (defaults to os.environ)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if environ is None:
        environ = os.environ

    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ValueError("Configuration must be a mapping")
            raw_config = loaded

    allowed_top_keys = {'policy', 'cache', 'circuit_breaker', 'api', 'storage'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    policy = _parse_policy(_section(raw_config, 'policy'))

    cache_data = _section(raw_config, 'cache')
    _reject_unknown(cache_data, {'ttl_seconds', 'max_entries'}, 'cache')
    cache = CacheConfig(
        ttl_seconds=_number(cache_data, 'ttl_seconds', 'cache', 300),
        max_entries=_optional_int(cache_data, 'max_entries', 'cache', 256),
    )

    breaker_data = _section(raw_config, 'circuit_breaker')
    _reject_unknown(breaker_data, {'failure_threshold', 'base_delay_ms', 'max_delay_ms'}, 'circuit_breaker')
    breaker = CircuitBreakerConfig(
        failure_threshold=_int(breaker_data, 'failure_threshold', 'circuit_breaker', 3),
        base_delay_ms=_int(breaker_data, 'base_delay_ms', 'circuit_breaker', 1000),
        max_delay_ms=_int(breaker_data, 'max_delay_ms', 'circuit_breaker', 10000),
    )

    api_data = _section(raw_config, 'api')
    _reject_unknown(api_data, {'base_url', 'allowed_upstream_prefix', 'api_key_env', 'timeout_seconds'}, 'api')
    base_url = _string(api_data, 'base_url', 'api', DEFAULT_BASE_URL).rstrip('/')
    api = ApiConfig(
        base_url=base_url,
        allowed_upstream_prefix=_string(api_data, 'allowed_upstream_prefix', 'api', base_url + '/'),
        api_key_env=_string(api_data, 'api_key_env', 'api', 'DISCOVERY_API_KEY'),
        timeout_seconds=_number(api_data, 'timeout_seconds', 'api', 10.0),
    )

    storage_data = _section(raw_config, 'storage')
    _reject_unknown(storage_data, {'db_path'}, 'storage')
    storage = StorageConfig(db_path=_string(storage_data, 'db_path', 'storage', DEFAULT_DB_PATH))

    return Settings(
        policy=policy,
        cache=cache,
        circuit_breaker=breaker,
        api=api,
        storage=storage,
        api_key=environ.get(api.api_key_env) or None,
    )


def _parse_policy(data: Dict[str, Any]) -> GovernancePolicy:
    """Parse and validate governance thresholds.

    Raises:
        ValueError: If a threshold is unknown, non-numeric or out of order
    """
    _reject_unknown(data, _POLICY_COUNT_KEYS | set(_POLICY_SECONDS_KEYS), 'policy')

    kwargs: Dict[str, Any] = {}
    for key in _POLICY_COUNT_KEYS:
        if key in data:
            kwargs[key] = _int(data, key, 'policy')
    for key, attr in _POLICY_SECONDS_KEYS.items():
        if key in data:
            kwargs[attr] = timedelta(seconds=_number(data, key, 'policy'))

    try:
        return GovernancePolicy(**kwargs)
    except ValueError as e:
        raise ValueError(f"Invalid policy: {e}")


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _int(data: Dict[str, Any], key: str, path: str, default: Optional[int] = None) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value


def _optional_int(data: Dict[str, Any], key: str, path: str, default: Optional[int]) -> Optional[int]:
    if key in data and data[key] is None:
        return None
    return _int(data, key, path, default)


def _number(data: Dict[str, Any], key: str, path: str, default: Optional[float] = None) -> float:
    value = data.get(key, default)
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return float(value)


def _string(data: Dict[str, Any], key: str, path: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value
