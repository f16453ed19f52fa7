"""
Unit tests for configuration loading and validation.

Tests defaults, strict validation and API key lookup.
"""

import os
import tempfile
from datetime import timedelta

import pytest
import yaml

from search_quota_guard.config.loader import (
    DEFAULT_BASE_URL,
    CacheConfig,
    Settings,
    load_settings,
)
from search_quota_guard.core.governor import GovernancePolicy


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
        """Test that no config file yields the stock thresholds."""
        settings = load_settings(environ={})

        assert settings.policy == GovernancePolicy()
        assert settings.cache.ttl == timedelta(minutes=5)
        assert settings.cache.max_entries == 256
        assert settings.circuit_breaker.failure_threshold == 3
        assert settings.api.base_url == DEFAULT_BASE_URL
        assert settings.api.allowed_upstream_prefix == DEFAULT_BASE_URL + "/"
        assert settings.api_key is None

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "policy": {
                "daily_limit": 1000,
                "session_hard_limit": 40,
                "session_warning_threshold": 10,
                "session_confirmation_threshold": 20,
                "session_soft_limit": 30,
                "duplicate_window_seconds": 15,
                "lockout_seconds": 60,
            },
            "cache": {"ttl_seconds": 120, "max_entries": 10},
            "circuit_breaker": {"failure_threshold": 5, "base_delay_ms": 500, "max_delay_ms": 4000},
            "api": {"base_url": "https://events.example.com/v1/", "timeout_seconds": 3},
            "storage": {"db_path": "/tmp/ledger.db"},
        }

        settings = load_settings(self._write_config(config_data), environ={})

        policy = settings.policy
        assert policy.daily_limit == 1000
        assert policy.session_hard_limit == 40
        assert policy.session_confirmation_threshold == 20
        assert policy.duplicate_window == timedelta(seconds=15)
        assert policy.lockout_duration == timedelta(seconds=60)
        assert policy.rapid_fire_window == timedelta(seconds=10)
        assert settings.cache.ttl == timedelta(seconds=120)
        assert settings.cache.max_entries == 10
        assert settings.circuit_breaker.failure_threshold == 5
        assert settings.api.base_url == "https://events.example.com/v1"
        assert settings.api.allowed_upstream_prefix == "https://events.example.com/v1/"
        assert settings.api.timeout_seconds == 3.0
        assert settings.storage.db_path == "/tmp/ledger.db"

    def test_empty_file_uses_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w') as f:
            f.write("")

        assert load_settings(config_path, environ={}) == Settings()

    def test_api_key_read_from_environment(self):
        """Test the API key comes from the configured environment variable."""
        config_path = self._write_config({"api": {"api_key_env": "MY_EVENTS_KEY"}})

        settings = load_settings(config_path, environ={"MY_EVENTS_KEY": "secret"})
        assert settings.api_key == "secret"

        settings = load_settings(config_path, environ={"DISCOVERY_API_KEY": "other"})
        assert settings.api_key is None

    def test_null_max_entries_means_unbounded(self):
        settings = load_settings(self._write_config({"cache": {"max_entries": None}}), environ={})
        assert settings.cache.max_entries is None

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_settings(os.path.join(self.temp_dir, "nonexistent.yaml"))

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_settings(config_path)

    def test_non_mapping_config_raises_error(self):
        config_path = self._write_config(["policy"])
        with pytest.raises(ValueError, match="must be a mapping"):
            load_settings(config_path)

    def test_unknown_top_level_key_raises_error(self):
        """Test that a misspelled section is rejected."""
        config_path = self._write_config({"polcy": {"daily_limit": 10}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(config_path)

    def test_unknown_policy_key_raises_error(self):
        config_path = self._write_config({"policy": {"daily_limt": 10}})
        with pytest.raises(ValueError, match="Unknown keys in policy"):
            load_settings(config_path)

    def test_section_must_be_mapping(self):
        config_path = self._write_config({"cache": 300})
        with pytest.raises(ValueError, match="'cache' must be a dictionary"):
            load_settings(config_path)

    @pytest.mark.parametrize("value", [0, -5, "100", True, 1.5])
    def test_invalid_limit_values(self, value):
        """Test that non-positive or non-integer limits are rejected."""
        config_path = self._write_config({"policy": {"daily_limit": value}})
        with pytest.raises(ValueError, match="must be a positive integer"):
            load_settings(config_path)

    def test_threshold_ordering_enforced(self):
        """Test a confirmation threshold above the hard limit is rejected."""
        config_path = self._write_config({
            "policy": {"session_hard_limit": 40, "session_confirmation_threshold": 60},
        })
        with pytest.raises(ValueError, match="Invalid policy"):
            load_settings(config_path)

    def test_invalid_base_url(self):
        config_path = self._write_config({"api": {"base_url": "ftp://events.example.com"}})
        with pytest.raises(ValueError, match="http"):
            load_settings(config_path)

    def test_breaker_base_delay_above_max(self):
        config_path = self._write_config({"circuit_breaker": {"base_delay_ms": 20000}})
        with pytest.raises(ValueError, match="base_delay_ms"):
            load_settings(config_path)


class TestConfigObjects:
    """Test configuration dataclass validation."""

    def test_cache_config_validation(self):
        with pytest.raises(ValueError, match="ttl_seconds"):
            CacheConfig(ttl_seconds=0)
        with pytest.raises(ValueError, match="max_entries"):
            CacheConfig(max_entries=0)

    def test_policy_defaults(self):
        """Test the stock policy values."""
        policy = GovernancePolicy()

        assert policy.daily_limit == 5000
        assert policy.session_hard_limit == 100
        assert policy.session_warning_threshold == 25
        assert policy.session_confirmation_threshold == 50
        assert policy.session_soft_limit == 75
        assert policy.duplicate_window == timedelta(seconds=30)
        assert policy.rapid_fire_window == timedelta(seconds=10)
        assert policy.rapid_fire_limit == 3
        assert policy.lockout_duration == timedelta(seconds=30)
        assert policy.max_recent_calls == 100
