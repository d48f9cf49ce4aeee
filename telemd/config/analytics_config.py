"""
Analytics configuration loader.

Values come from the environment (optionally a .env file), an optional YAML
file, and per-environment profile defaults, in increasing order of
precedence: profile < YAML < environment variables.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from telemd.exceptions import ConfigurationError


class AnalyticsConfig(BaseModel):
    """Batch queue and retry settings."""
    enable_batching: bool = True
    batch_size: int = 10
    flush_interval_ms: int = 5000
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    dead_letter_capacity: int = 100

    @property
    def flush_interval_seconds(self) -> float:
        return self.flush_interval_ms / 1000.0


class RateLimitConfig(BaseModel):
    """Per-caller fixed window rate limiting."""
    enabled: bool = True
    window_ms: int = 15 * 60 * 1000
    max_requests: int = 1000
    sweep_interval_ms: int = 5 * 60 * 1000
    top_consumers: int = 10


class MonitoringConfig(BaseModel):
    """Health checks and metrics."""
    enable_health_checks: bool = True
    health_check_interval_ms: int = 30000
    queue_warning_threshold: int = 100
    queue_critical_threshold: int = 500
    # Compared against process RSS (psutil), not heap usage
    memory_warning_mb: int = 512
    memory_critical_mb: int = 1024
    enable_metrics: bool = True
    metrics_port: int = 9090


class DataRetentionConfig(BaseModel):
    """Retention policies and the chunked cleanup job."""
    event_data_retention_days: int = 365
    session_data_retention_days: int = 90
    error_log_retention_days: int = 30
    batch_log_retention_days: int = 30
    health_log_retention_days: int = 7
    enable_data_cleanup: bool = True
    cleanup_cron: str = "0 2 * * *"
    check_interval_seconds: int = 30
    verbose_logging: bool = False
    chunk_size: int = 1000
    pause_between_chunks_ms: int = 100
    store_cleanup_metrics: bool = True
    audit_log_dir: Optional[str] = None


class SecurityConfig(BaseModel):
    """Privacy handling for collected events."""
    anonymize_ip_addresses: bool = False
    pseudonymize_sessions: bool = False
    enable_gdpr_compliance: bool = True


class TelemdConfig(BaseModel):
    """Operational configuration shared by every component."""
    environment: str = "default"
    database_path: str = "data/analytics.db"
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    retention: DataRetentionConfig = Field(default_factory=DataRetentionConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


# Profile defaults applied before YAML and environment overrides
PROFILE_OVERRIDES: Dict[str, Dict[str, Dict[str, Any]]] = {
    'development': {
        'analytics': {'batch_size': 3, 'flush_interval_ms': 2000},
        'retention': {'verbose_logging': True},
    },
    'production': {
        'analytics': {'batch_size': 20, 'flush_interval_ms': 10000, 'max_retries': 5},
    },
}

# (section, field, env var, parser)
ENV_BINDINGS: List[Tuple[str, str, str, str]] = [
    ('analytics', 'batch_size', 'ANALYTICS_BATCH_SIZE', 'int'),
    ('analytics', 'flush_interval_ms', 'ANALYTICS_FLUSH_INTERVAL', 'int'),
    ('analytics', 'max_retries', 'ANALYTICS_MAX_RETRIES', 'int'),
    ('analytics', 'retry_base_delay_ms', 'ANALYTICS_RETRY_DELAY', 'int'),
    ('analytics', 'retry_max_delay_ms', 'ANALYTICS_RETRY_MAX_DELAY', 'int'),
    ('analytics', 'enable_batching', 'ANALYTICS_ENABLE_BATCHING', 'bool_default_on'),
    ('analytics', 'dead_letter_capacity', 'ANALYTICS_DEAD_LETTER_CAPACITY', 'int'),
    ('rate_limit', 'max_requests', 'ANALYTICS_RATE_LIMIT', 'int'),
    ('rate_limit', 'window_ms', 'ANALYTICS_RATE_LIMIT_WINDOW', 'int'),
    ('monitoring', 'enable_health_checks', 'ANALYTICS_ENABLE_HEALTH_CHECKS', 'bool_default_on'),
    ('monitoring', 'health_check_interval_ms', 'ANALYTICS_HEALTH_CHECK_INTERVAL', 'int'),
    ('monitoring', 'enable_metrics', 'ANALYTICS_ENABLE_METRICS', 'bool_default_on'),
    ('monitoring', 'metrics_port', 'ANALYTICS_METRICS_PORT', 'int'),
    ('retention', 'event_data_retention_days', 'ANALYTICS_EVENT_RETENTION_DAYS', 'int'),
    ('retention', 'session_data_retention_days', 'ANALYTICS_SESSION_RETENTION_DAYS', 'int'),
    ('retention', 'error_log_retention_days', 'ANALYTICS_ERROR_LOG_RETENTION_DAYS', 'int'),
    ('retention', 'enable_data_cleanup', 'ANALYTICS_ENABLE_DATA_CLEANUP', 'bool_default_on'),
    ('retention', 'cleanup_cron', 'ANALYTICS_CLEANUP_CRON', 'str'),
    ('retention', 'verbose_logging', 'ANALYTICS_VERBOSE_LOGGING', 'bool_default_off'),
    ('retention', 'chunk_size', 'ANALYTICS_CLEANUP_CHUNK_SIZE', 'int'),
    ('retention', 'pause_between_chunks_ms', 'ANALYTICS_CLEANUP_PAUSE', 'int'),
    ('retention', 'store_cleanup_metrics', 'ANALYTICS_STORE_CLEANUP_METRICS', 'bool_default_on'),
    ('retention', 'audit_log_dir', 'ANALYTICS_AUDIT_LOG_DIR', 'str'),
    ('security', 'anonymize_ip_addresses', 'ANALYTICS_ANONYMIZE_IPS', 'bool_default_off'),
    ('security', 'enable_gdpr_compliance', 'ANALYTICS_GDPR_COMPLIANCE', 'bool_default_on'),
]


def _parse_env_value(raw: str, kind: str) -> Any:
    if kind == 'int':
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError([f"Expected an integer, got {raw!r}"])
    if kind == 'bool_default_on':
        return raw.strip().lower() != 'false'
    if kind == 'bool_default_off':
        return raw.strip().lower() == 'true'
    return raw


def _merge(target: Dict[str, Any], overrides: Dict[str, Any]) -> None:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


def load_telemd_config(config_path: Optional[Path] = None,
                       environment: Optional[str] = None,
                       env: Optional[Dict[str, str]] = None,
                       use_dotenv: bool = True) -> TelemdConfig:
    """Load telemd configuration from profile defaults, YAML and environment.

    Args:
        config_path: Optional YAML file with the same section layout as
            ``TelemdConfig``.
        environment: Profile name; defaults to ``ANALYTICS_ENV``.
        env: Mapping to read variables from instead of ``os.environ``.
        use_dotenv: Load a ``.env`` file into the process environment first.

    Raises:
        ConfigurationError: if the resulting configuration is invalid.
    """
    if use_dotenv and env is None:
        load_dotenv()
    source = env if env is not None else os.environ

    profile = environment or source.get('ANALYTICS_ENV', 'default')
    data: Dict[str, Any] = {
        'environment': profile,
        'analytics': {}, 'rate_limit': {}, 'monitoring': {},
        'retention': {}, 'security': {},
    }
    _merge(data, PROFILE_OVERRIDES.get(profile, {}))

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        with open(config_path, 'r') as f:
            file_data = yaml.safe_load(f) or {}
        _merge(data, file_data)

    if source.get('ANALYTICS_DATABASE_PATH'):
        data['database_path'] = source['ANALYTICS_DATABASE_PATH']

    for section, field, var, kind in ENV_BINDINGS:
        raw = source.get(var)
        if raw is None or raw == '':
            continue
        data[section][field] = _parse_env_value(raw, kind)

    config = TelemdConfig(**data)
    is_valid, errors = validate_config(config)
    if not is_valid:
        raise ConfigurationError(errors)
    return config


def validate_config(config: TelemdConfig) -> Tuple[bool, List[str]]:
    """Check cross-field constraints that pydantic types cannot express."""
    # Imported here to keep config importable without the storage package
    from telemd.storage.retention_schedule import CronSchedule

    errors: List[str] = []
    analytics = config.analytics

    if analytics.batch_size < 1:
        errors.append('Analytics batch size must be at least 1')
    if analytics.flush_interval_ms < 1000:
        errors.append('Analytics flush interval must be at least 1000ms')
    if analytics.max_retries < 1:
        errors.append('Analytics max retries must be at least 1')
    if analytics.retry_base_delay_ms < 0 or analytics.retry_max_delay_ms < 0:
        errors.append('Retry delays must not be negative')
    if analytics.backoff_multiplier < 1:
        errors.append('Backoff multiplier must be at least 1')
    if analytics.dead_letter_capacity < 0:
        errors.append('Dead letter capacity must not be negative')

    if config.rate_limit.window_ms <= 0:
        errors.append('Rate limit window must be positive')
    if config.rate_limit.max_requests < 1:
        errors.append('Rate limit max requests must be at least 1')

    monitoring = config.monitoring
    if monitoring.health_check_interval_ms < 5000:
        errors.append('Health check interval must be at least 5000ms')
    if monitoring.queue_warning_threshold > monitoring.queue_critical_threshold:
        errors.append('Queue warning threshold must not exceed the critical threshold')
    if monitoring.memory_warning_mb > monitoring.memory_critical_mb:
        errors.append('Memory warning threshold must not exceed the critical threshold')

    retention = config.retention
    for field in ('event_data_retention_days', 'session_data_retention_days',
                  'error_log_retention_days', 'batch_log_retention_days',
                  'health_log_retention_days'):
        if getattr(retention, field) < 0:
            errors.append(f'{field} must be 0 or greater')
    if retention.chunk_size < 1:
        errors.append('Cleanup chunk size must be at least 1')
    if retention.pause_between_chunks_ms < 0:
        errors.append('Cleanup pause must not be negative')
    try:
        CronSchedule(retention.cleanup_cron)
    except ValueError as e:
        errors.append(f'Invalid cleanup schedule: {e}')

    return len(errors) == 0, errors
