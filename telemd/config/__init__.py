"""Configuration loading for telemd."""

from .analytics_config import (
    AnalyticsConfig,
    RateLimitConfig,
    MonitoringConfig,
    DataRetentionConfig,
    SecurityConfig,
    TelemdConfig,
    load_telemd_config,
    validate_config,
)

__all__ = [
    'AnalyticsConfig',
    'RateLimitConfig',
    'MonitoringConfig',
    'DataRetentionConfig',
    'SecurityConfig',
    'TelemdConfig',
    'load_telemd_config',
    'validate_config',
]
