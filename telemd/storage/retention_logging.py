"""
Logging and audit trail for retention cleanup runs.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .retention_models import CleanupResult

logger = logging.getLogger(__name__)


def format_duration(duration_seconds: float) -> str:
    """Format duration in a human-readable format."""
    if duration_seconds < 60:
        return f"{duration_seconds:.2f}s"
    elif duration_seconds < 3600:
        return f"{duration_seconds / 60:.1f}m"
    else:
        return f"{duration_seconds / 3600:.1f}h"


class RetentionLogger:
    """Writes cleanup summaries to the log and, optionally, a JSONL audit file."""

    def __init__(self, logs_dir: Optional[str] = None):
        self.logs_dir = Path(logs_dir) if logs_dir else None
        if self.logs_dir is not None:
            self.logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def audit_file(self) -> Optional[Path]:
        return self.logs_dir / 'cleanup_audit.jsonl' if self.logs_dir else None

    def build_summary(self, results: List[CleanupResult], duration_seconds: float,
                      trigger: str) -> Dict[str, Any]:
        successful = [r for r in results if r.success]
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'trigger': trigger,
            'total_policies_run': len(results),
            'total_records_deleted': sum(r.deleted_records for r in results),
            'execution_time_seconds': round(duration_seconds, 4),
            'status': 'SUCCESS' if len(successful) == len(results) else 'PARTIAL',
            'successful_policies': len(successful),
            'failed_policies': len(results) - len(successful),
            'details': [r.to_dict() for r in results],
        }

    def log_cleanup_run(self, results: List[CleanupResult], duration_seconds: float,
                        trigger: str = 'scheduled') -> Dict[str, Any]:
        """Log a completed run and append it to the audit trail."""
        summary = self.build_summary(results, duration_seconds, trigger)

        for result in results:
            if result.success:
                logger.info(f"Cleanup policy completed: {result.policy} - "
                            f"{result.deleted_records} records deleted in "
                            f"{format_duration(result.execution_time)}")
            else:
                logger.error(f"Cleanup policy failed: {result.policy} - {result.error}")

        logger.info(f"Data retention cleanup metrics: {json.dumps(summary)}")
        self._append_audit_entry(summary)
        return summary

    def _append_audit_entry(self, entry: Dict[str, Any]) -> None:
        if self.audit_file is None:
            return
        try:
            with open(self.audit_file, 'a') as f:
                f.write(json.dumps(entry) + '\n')
        except OSError as e:
            # Audit trail is best-effort; the cleanup itself already happened
            logger.error(f"Failed to write cleanup audit entry: {e}")

    def read_audit_trail(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent audit entries, newest last."""
        if self.audit_file is None or not self.audit_file.exists():
            return []
        with open(self.audit_file, 'r') as f:
            lines = f.readlines()[-limit:]
        return [json.loads(line) for line in lines if line.strip()]
