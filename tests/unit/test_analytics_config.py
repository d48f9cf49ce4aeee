"""
Unit tests for configuration loading and validation.
"""

import tempfile
from pathlib import Path

import pytest
import yaml

from telemd.config.analytics_config import (
    AnalyticsConfig,
    DataRetentionConfig,
    TelemdConfig,
    load_telemd_config,
    validate_config,
)
from telemd.exceptions import ConfigurationError


class TestDefaults:

    def test_defaults(self):
        config = load_telemd_config(env={})

        assert config.environment == 'default'
        assert config.analytics.batch_size == 10
        assert config.analytics.flush_interval_ms == 5000
        assert config.analytics.max_retries == 3
        assert config.analytics.retry_base_delay_ms == 1000
        assert config.analytics.enable_batching is True
        assert config.rate_limit.window_ms == 15 * 60 * 1000
        assert config.rate_limit.max_requests == 1000
        assert config.retention.chunk_size == 1000
        assert config.retention.pause_between_chunks_ms == 100
        assert config.retention.cleanup_cron == '0 2 * * *'
        assert config.security.anonymize_ip_addresses is False

    def test_sections_are_not_shared_between_instances(self):
        first = TelemdConfig()
        second = TelemdConfig()

        first.analytics.batch_size = 99

        assert second.analytics.batch_size == 10


class TestProfilesAndOverrides:

    def test_development_profile(self):
        config = load_telemd_config(env={'ANALYTICS_ENV': 'development'})

        assert config.analytics.batch_size == 3
        assert config.analytics.flush_interval_ms == 2000
        assert config.retention.verbose_logging is True

    def test_production_profile(self):
        config = load_telemd_config(environment='production', env={})

        assert config.analytics.batch_size == 20
        assert config.analytics.flush_interval_ms == 10000
        assert config.analytics.max_retries == 5

    def test_env_vars_override_profile(self):
        config = load_telemd_config(env={
            'ANALYTICS_ENV': 'production',
            'ANALYTICS_BATCH_SIZE': '50',
            'ANALYTICS_ENABLE_BATCHING': 'false',
            'ANALYTICS_ANONYMIZE_IPS': 'true',
            'ANALYTICS_CLEANUP_CRON': '30 3 * * 0',
            'ANALYTICS_RATE_LIMIT': '20',
        })

        assert config.analytics.batch_size == 50
        assert config.analytics.max_retries == 5
        assert config.analytics.enable_batching is False
        assert config.security.anonymize_ip_addresses is True
        assert config.retention.cleanup_cron == '30 3 * * 0'
        assert config.rate_limit.max_requests == 20

    def test_yaml_between_profile_and_env(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / 'telemd.yaml'
            with open(config_path, 'w') as f:
                yaml.dump({
                    'analytics': {'batch_size': 7, 'max_retries': 4},
                    'retention': {'chunk_size': 250},
                }, f)

            config = load_telemd_config(config_path, env={
                'ANALYTICS_ENV': 'production',
                'ANALYTICS_MAX_RETRIES': '2',
            })

        assert config.analytics.batch_size == 7
        assert config.analytics.max_retries == 2
        assert config.analytics.flush_interval_ms == 10000
        assert config.retention.chunk_size == 250

    def test_missing_yaml_file(self):
        with pytest.raises(FileNotFoundError):
            load_telemd_config(Path('/nonexistent/telemd.yaml'), env={})

    def test_non_numeric_env_value(self):
        with pytest.raises(ConfigurationError):
            load_telemd_config(env={'ANALYTICS_BATCH_SIZE': 'ten'})

    def test_invalid_values_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_telemd_config(env={
                'ANALYTICS_BATCH_SIZE': '0',
                'ANALYTICS_CLEANUP_CRON': 'every night',
            })

        assert len(exc_info.value.errors) == 2


class TestValidateConfig:

    def test_default_config_is_valid(self):
        assert validate_config(TelemdConfig()) == (True, [])

    def test_reports_every_problem(self):
        config = TelemdConfig(
            analytics=AnalyticsConfig(batch_size=0, flush_interval_ms=10, max_retries=0),
            retention=DataRetentionConfig(event_data_retention_days=-1, chunk_size=0),
        )

        is_valid, errors = validate_config(config)

        assert not is_valid
        assert 'Analytics batch size must be at least 1' in errors
        assert 'Analytics flush interval must be at least 1000ms' in errors
        assert 'Analytics max retries must be at least 1' in errors
        assert 'event_data_retention_days must be 0 or greater' in errors
        assert 'Cleanup chunk size must be at least 1' in errors

    def test_health_interval_lower_bound(self):
        config = TelemdConfig()
        config.monitoring.health_check_interval_ms = 1000

        is_valid, errors = validate_config(config)

        assert not is_valid
        assert errors == ['Health check interval must be at least 5000ms']
