"""
Data models for the retention system.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class RetentionPolicy:
    """Retention rule for one storage category."""
    name: str
    table: str
    retention_days: int
    date_column: str = 'created_at'
    enabled: bool = True
    last_run: Optional[datetime] = None
    total_deleted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'table': self.table,
            'retention_days': self.retention_days,
            'date_column': self.date_column,
            'enabled': self.enabled,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'total_deleted': self.total_deleted,
        }


@dataclass
class CleanupResult:
    """Outcome of one policy execution."""
    policy: str
    deleted_records: int
    execution_time: float  # seconds
    success: bool
    error: Optional[str] = None
    chunks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'policy': self.policy,
            'deleted_records': self.deleted_records,
            'execution_time': round(self.execution_time, 4),
            'success': self.success,
            'chunks': self.chunks,
        }
        if self.error:
            result['error'] = self.error
        return result


@dataclass
class CleanupEstimate:
    """Dry-run count for one policy."""
    policy: str
    estimated_deletions: int
    cutoff_date: datetime
    table_size: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'policy': self.policy,
            'estimated_deletions': self.estimated_deletions,
            'cutoff_date': self.cutoff_date.isoformat(),
            'table_size': self.table_size,
            'error': self.error,
        }


@dataclass
class RetentionStats:
    """Snapshot of the retention manager for operators."""
    total_policies: int
    active_policies: int
    last_cleanup_run: Optional[datetime]
    total_records_deleted: int
    cleanup_results: List[CleanupResult] = field(default_factory=list)
    is_running: bool = False
    next_scheduled_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_policies': self.total_policies,
            'active_policies': self.active_policies,
            'last_cleanup_run': self.last_cleanup_run.isoformat() if self.last_cleanup_run else None,
            'total_records_deleted': self.total_records_deleted,
            'cleanup_results': [r.to_dict() for r in self.cleanup_results],
            'is_running': self.is_running,
            'next_scheduled_run': self.next_scheduled_run.isoformat() if self.next_scheduled_run else None,
        }


@dataclass
class ErasureResult:
    """Outcome of a right-to-erasure request."""
    user_id: str
    deleted_records: Dict[str, int]
    success: bool
    errors: List[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted_records.values())
