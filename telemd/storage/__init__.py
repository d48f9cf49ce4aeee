"""Retention policies, chunked cleanup and the storage boundary they run against."""

from .retention_models import (
    RetentionPolicy,
    CleanupResult,
    CleanupEstimate,
    RetentionStats,
    ErasureResult,
)
from .retention_store import RetentionStore, SQLiteRetentionStore
from .retention_schedule import CronSchedule
from .retention_logging import RetentionLogger, format_duration
from .retention_manager import DataRetentionManager, default_retention_policies

__all__ = [
    'RetentionPolicy',
    'CleanupResult',
    'CleanupEstimate',
    'RetentionStats',
    'ErasureResult',
    'RetentionStore',
    'SQLiteRetentionStore',
    'CronSchedule',
    'RetentionLogger',
    'format_duration',
    'DataRetentionManager',
    'default_retention_policies',
]
