"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and environment overrides.
"""

import os
import tempfile

import pytest
import yaml

from usage_guard.config.loader import (
    BreakerConfig,
    QuotaConfig,
    RetentionConfig,
    Settings,
    load_settings,
)
from usage_guard.core.rate_limiter import RateLimitTier


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
        """Test that defaults apply when no file is given."""
        settings = load_settings(environ={})

        assert settings == Settings()
        assert settings.quota.free_daily_limit == 5
        assert settings.quota.cache_ttl_seconds == 60
        assert settings.retention.days == 30
        assert settings.circuit_breaker.failure_threshold == 5
        assert settings.circuit_breaker.reset_timeout == 30.0
        assert settings.circuit_breaker.success_threshold == 2
        assert settings.rate_limit.free == RateLimitTier(30, 60.0)
        assert settings.rate_limit.premium == RateLimitTier(100, 60.0)
        assert settings.provider.model == "gpt-4o-mini"

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "database": {"path": "/tmp/usage.db"},
            "quota": {"free_daily_limit": 10, "timezone": "UTC", "cache_ttl_seconds": 120},
            "retention": {"days": 90},
            "circuit_breaker": {"failure_threshold": 3, "reset_timeout": 10},
            "rate_limit": {"free": {"max_requests": 10, "window_seconds": 30}},
            "provider": {"model": "gpt-4o", "max_tokens": 500},
        }
        settings = load_settings(self._write_config(config_data), environ={})

        assert settings.database.path == "/tmp/usage.db"
        assert settings.quota.free_daily_limit == 10
        assert settings.quota.cache_ttl_seconds == 120
        assert settings.retention.days == 90
        assert settings.circuit_breaker.failure_threshold == 3
        assert settings.circuit_breaker.success_threshold == 2
        assert settings.rate_limit.free == RateLimitTier(10, 30.0)
        assert settings.rate_limit.premium == RateLimitTier(100, 60.0)
        assert settings.provider.model == "gpt-4o"

    def test_empty_file_uses_defaults(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()

        assert load_settings(path, environ={}) == Settings()

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_settings(os.path.join(self.temp_dir, "nope.yaml"), environ={})

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(self._write_config({"pricing": {}}), environ={})

    def test_unknown_section_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown quota keys"):
            load_settings(self._write_config({"quota": {"daily": 5}}), environ={})

    def test_incomplete_tier_rejected(self):
        with pytest.raises(ValueError, match="Missing required 'window_seconds'"):
            load_settings(self._write_config({"rate_limit": {"premium": {"max_requests": 5}}}), environ={})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_settings(self._write_config({"retention": [30]}), environ={})

    def test_out_of_range_values_rejected(self):
        with pytest.raises(ValueError):
            load_settings(self._write_config({"quota": {"free_daily_limit": 101}}), environ={})
        with pytest.raises(ValueError):
            load_settings(self._write_config({"quota": {"cache_ttl_seconds": 10}}), environ={})
        with pytest.raises(ValueError):
            load_settings(self._write_config({"retention": {"days": 400}}), environ={})
        with pytest.raises(ValueError):
            load_settings(self._write_config({"provider": {"model": "gpt-2"}}), environ={})

    def test_boolean_values_rejected(self):
        with pytest.raises(ValueError, match="cannot be a boolean"):
            load_settings(self._write_config({"retention": {"days": True}}), environ={})

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("quota: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_settings(path, environ={})


class TestEnvironmentOverrides:
    """Test environment variables applied after the file."""

    def test_overrides_apply(self):
        settings = load_settings(environ={
            "FREE_USER_DAILY_LIMIT": "8",
            "DATA_RETENTION_DAYS": "14",
            "USAGE_GUARD_DB_PATH": "/data/usage.db",
            "USAGE_GUARD_TIMEZONE": "Europe/Berlin",
        })

        assert settings.quota.free_daily_limit == 8
        assert settings.retention.days == 14
        assert settings.database.path == "/data/usage.db"
        assert settings.quota.timezone == "Europe/Berlin"

    def test_invalid_override_rejected(self):
        with pytest.raises(ValueError, match="FREE_USER_DAILY_LIMIT must be an integer"):
            load_settings(environ={"FREE_USER_DAILY_LIMIT": "lots"})
        with pytest.raises(ValueError):
            load_settings(environ={"DATA_RETENTION_DAYS": "0"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("FREE_USER_DAILY_LIMIT", "12")

        assert load_settings().quota.free_daily_limit == 12


class TestConfigDataclasses:
    """Test direct construction validation."""

    def test_quota_limits(self):
        with pytest.raises(ValueError):
            QuotaConfig(free_daily_limit=0)
        with pytest.raises(ValueError):
            QuotaConfig(timezone="")

    def test_retention_limits(self):
        with pytest.raises(ValueError):
            RetentionConfig(days=0)

    def test_breaker_limits(self):
        with pytest.raises(ValueError):
            BreakerConfig(half_open_max_calls=0)
