"""
Data retention manager.

Enforces per-category retention policies by deleting expired rows in
bounded chunks with a pause between chunks, so a cleanup never issues one
unbounded delete against shared storage. Also serves the operator surface:
policy administration, forced cleanups, dry-run estimates and
right-to-erasure requests.
"""

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from telemd.config.analytics_config import DataRetentionConfig
from telemd.exceptions import (
    CleanupAlreadyRunningError,
    InvalidPolicyError,
    PolicyNotFoundError,
    StorageError,
)
from .retention_logging import RetentionLogger
from .retention_models import (
    CleanupEstimate,
    CleanupResult,
    ErasureResult,
    RetentionPolicy,
    RetentionStats,
)
from .retention_schedule import CronSchedule
from .retention_store import RetentionStore, quote_identifier

logger = logging.getLogger(__name__)


def default_retention_policies(config: DataRetentionConfig) -> List[RetentionPolicy]:
    """Built-in policies, one per analytics table."""
    enabled = config.enable_data_cleanup
    return [
        RetentionPolicy('Analytics Events', 'analytics_events',
                        config.event_data_retention_days, 'created_at', enabled),
        RetentionPolicy('Session Data', 'analytics_sessions',
                        config.session_data_retention_days, 'created_at', enabled),
        RetentionPolicy('Error Logs', 'analytics_errors',
                        config.error_log_retention_days, 'created_at', enabled),
        RetentionPolicy('Batch Processing Logs', 'batch_processing_logs',
                        config.batch_log_retention_days, 'created_at', enabled),
        RetentionPolicy('Health Check Logs', 'health_check_logs',
                        config.health_log_retention_days, 'created_at', enabled),
    ]


def _validate_policy(policy: RetentionPolicy) -> None:
    if not policy.name:
        raise InvalidPolicyError("Retention policy name is required")
    if policy.retention_days < 0:
        raise InvalidPolicyError(f"retention_days must be 0 or greater: {policy.retention_days}")
    try:
        quote_identifier(policy.table)
        quote_identifier(policy.date_column)
    except StorageError as e:
        raise InvalidPolicyError(str(e))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataRetentionManager:
    """
    Runs retention policies against a RetentionStore.

    ``run_cleanup`` and ``force_cleanup`` share one running flag: a second
    invocation while a cleanup is in progress raises
    ``CleanupAlreadyRunningError`` instead of double-running.
    """

    def __init__(self,
                 store: RetentionStore,
                 config: Optional[DataRetentionConfig] = None,
                 policies: Optional[Iterable[RetentionPolicy]] = None,
                 metrics: Optional[Any] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.config = config or DataRetentionConfig()
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock

        self._policies: List[RetentionPolicy] = []
        for policy in (policies if policies is not None else default_retention_policies(self.config)):
            _validate_policy(policy)
            self._policies.append(policy)

        self.schedule = CronSchedule(self.config.cleanup_cron)
        self.audit = RetentionLogger(self.config.audit_log_dir)

        self._cleanup_results: List[CleanupResult] = []
        self._last_cleanup_run: Optional[datetime] = None
        self._is_running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._last_scheduled_minute: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_scheduled(self) -> bool:
        return self._scheduler_task is not None and not self._scheduler_task.done()

    def cutoff_for(self, policy: RetentionPolicy) -> datetime:
        return self._clock() - timedelta(days=policy.retention_days)

    # Cleanup execution

    async def run_cleanup(self, trigger: str = 'scheduled') -> List[CleanupResult]:
        """Run every enabled policy, in list order."""
        return await self._run_policies([p for p in self._policies if p.enabled], trigger)

    async def force_cleanup(self, policy_names: Optional[List[str]] = None) -> List[CleanupResult]:
        """
        Run cleanup out of band.

        Named policies run even when disabled; without names every enabled
        policy runs.
        """
        if policy_names:
            known = {p.name for p in self._policies}
            missing = [name for name in policy_names if name not in known]
            if missing:
                raise PolicyNotFoundError(', '.join(missing))
            policies = [p for p in self._policies if p.name in policy_names]
        else:
            policies = [p for p in self._policies if p.enabled]

        if not policies:
            return []

        if self.config.verbose_logging:
            logger.info(f"Manual cleanup triggered for {len(policies)} policies: "
                        f"{', '.join(p.name for p in policies)}")
        return await self._run_policies(policies, 'manual')

    async def _run_policies(self, policies: List[RetentionPolicy], trigger: str) -> List[CleanupResult]:
        if self._is_running:
            raise CleanupAlreadyRunningError()

        self._is_running = True
        start_time = time.monotonic()
        results: List[CleanupResult] = []

        if self.config.verbose_logging:
            logger.info(f"Starting data retention cleanup ({trigger}) at {self._clock().isoformat()}")

        try:
            for policy in policies:
                results.append(await self.execute_cleanup_policy(policy))

            self._cleanup_results = results
            self._last_cleanup_run = self._clock()
            duration = time.monotonic() - start_time

            total_deleted = sum(r.deleted_records for r in results)
            successful = len([r for r in results if r.success])
            logger.info(f"Data retention cleanup completed in {duration:.2f}s: "
                        f"{successful}/{len(results)} policies processed, "
                        f"{total_deleted} records deleted")

            if self.config.store_cleanup_metrics:
                self.audit.log_cleanup_run(results, duration, trigger)
        finally:
            self._is_running = False

        return results

    async def execute_cleanup_policy(self, policy: RetentionPolicy) -> CleanupResult:
        """Apply one policy. Failures are captured in the result, never raised."""
        start_time = time.monotonic()
        cutoff = self.cutoff_for(policy)

        if self.config.verbose_logging:
            logger.info(f"Executing cleanup policy: {policy.name} "
                        f"(retention: {policy.retention_days} days, table: {policy.table})")

        try:
            deleted, chunks = await self._execute_chunked_delete(policy, cutoff)
            result = CleanupResult(
                policy=policy.name,
                deleted_records=deleted,
                execution_time=time.monotonic() - start_time,
                success=True,
                chunks=chunks,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error executing data retention for {policy.name}: {e}")
            result = CleanupResult(
                policy=policy.name,
                deleted_records=0,
                execution_time=time.monotonic() - start_time,
                success=False,
                error=str(e) or type(e).__name__,
            )

        policy.last_run = self._clock()
        if result.success:
            policy.total_deleted += result.deleted_records

        if self.metrics is not None:
            self.metrics.record_cleanup(result)
        return result

    async def _execute_chunked_delete(self, policy: RetentionPolicy,
                                      cutoff: datetime) -> Tuple[int, int]:
        """Delete rows older than ``cutoff`` in chunks. Returns (deleted, chunks)."""
        chunk_size = self.config.chunk_size
        pause = self.config.pause_between_chunks_ms / 1000.0
        total_deleted = 0
        chunks = 0

        while True:
            ids = await self.store.select_expired_ids(policy.table, policy.date_column,
                                                      cutoff, chunk_size)
            if not ids:
                break

            total_deleted += await self.store.delete_ids(policy.table, ids)
            chunks += 1

            if len(ids) < chunk_size:
                break

            await self._sleep(pause)

        return total_deleted, chunks

    async def estimate_cleanup_impact(self) -> List[CleanupEstimate]:
        """Dry run: count what each enabled policy would delete."""
        estimates: List[CleanupEstimate] = []

        for policy in [p for p in self._policies if p.enabled]:
            cutoff = self.cutoff_for(policy)
            try:
                expired = await self.store.count_expired(policy.table, policy.date_column, cutoff)
                table_size = await self.store.count_all(policy.table)
                estimates.append(CleanupEstimate(policy.name, expired, cutoff, table_size))
            except Exception as e:
                logger.error(f"Error estimating cleanup impact for {policy.name}: {e}")
                estimates.append(CleanupEstimate(policy.name, 0, cutoff, 0, error=str(e)))

        if self.config.verbose_logging:
            total = sum(e.estimated_deletions for e in estimates)
            logger.info(f"Cleanup impact estimation completed: {total} records would be "
                        f"deleted across {len(estimates)} policies")
        return estimates

    async def erase_user_data(self, user_id: str, column: str = 'user_id') -> ErasureResult:
        """
        Right to erasure: delete every row tied to ``user_id``.

        Covers each policy table that has ``column``, using the same chunk
        size and pause as retention cleanup.
        """
        deleted = {}
        errors: List[str] = []
        chunk_size = self.config.chunk_size
        pause = self.config.pause_between_chunks_ms / 1000.0

        for table in dict.fromkeys(p.table for p in self._policies):
            try:
                if not await self.store.has_column(table, column):
                    continue
                count = 0
                while True:
                    ids = await self.store.select_ids_matching(table, column, user_id, chunk_size)
                    if not ids:
                        break
                    count += await self.store.delete_ids(table, ids)
                    if len(ids) < chunk_size:
                        break
                    await self._sleep(pause)
                deleted[table] = count
            except Exception as e:
                errors.append(f"{table}: {e}")

        logger.info(f"Erasure request processed: {sum(deleted.values())} records deleted "
                    f"across {len(deleted)} tables, {len(errors)} errors")
        return ErasureResult(user_id=user_id, deleted_records=deleted,
                             success=not errors, errors=errors)

    # Policy administration

    def get_retention_policies(self) -> List[RetentionPolicy]:
        return [dataclasses.replace(p) for p in self._policies]

    def get_policy(self, name: str) -> Optional[RetentionPolicy]:
        for policy in self._policies:
            if policy.name == name:
                return policy
        return None

    def update_retention_policy(self, name: str, retention_days: Optional[int] = None,
                                enabled: Optional[bool] = None) -> bool:
        """Change a policy's retention or enabled flag. False if unknown."""
        policy = self.get_policy(name)
        if policy is None:
            return False
        if retention_days is not None:
            if retention_days < 0:
                raise InvalidPolicyError(f"retention_days must be 0 or greater: {retention_days}")
            policy.retention_days = retention_days
        if enabled is not None:
            policy.enabled = enabled
        logger.info(f"Retention policy updated: {name} "
                    f"(retention_days={policy.retention_days}, enabled={policy.enabled})")
        return True

    def add_retention_policy(self, policy: RetentionPolicy) -> None:
        """Add a policy, or replace the definition of one with the same name."""
        _validate_policy(policy)
        existing = self.get_policy(policy.name)
        if existing is not None:
            existing.table = policy.table
            existing.retention_days = policy.retention_days
            existing.date_column = policy.date_column
            existing.enabled = policy.enabled
        else:
            self._policies.append(dataclasses.replace(policy, last_run=None, total_deleted=0))
        logger.info(f"Retention policy registered: {policy.name} ({policy.table})")

    def remove_retention_policy(self, name: str) -> bool:
        policy = self.get_policy(name)
        if policy is None:
            return False
        self._policies.remove(policy)
        logger.info(f"Retention policy removed: {name}")
        return True

    def get_retention_stats(self) -> RetentionStats:
        return RetentionStats(
            total_policies=len(self._policies),
            active_policies=len([p for p in self._policies if p.enabled]),
            last_cleanup_run=self._last_cleanup_run,
            total_records_deleted=sum(p.total_deleted for p in self._policies),
            cleanup_results=list(self._cleanup_results),
            is_running=self._is_running,
            next_scheduled_run=self.schedule.next_after(self._clock()) if self.is_scheduled else None,
        )

    # Scheduling

    async def start(self) -> None:
        """Start the scheduled cleanup job."""
        if not self.config.enable_data_cleanup:
            logger.warning("Data retention cleanup is disabled in configuration")
            return
        if self.is_scheduled:
            return
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Data retention job scheduled with cron pattern: {self.schedule.expression}")

    async def stop(self) -> None:
        if self._scheduler_task is None:
            return
        self._scheduler_task.cancel()
        try:
            await self._scheduler_task
        except asyncio.CancelledError:
            pass
        self._scheduler_task = None
        logger.info("Data retention manager: cleanup job stopped")

    def _should_run_cleanup(self, now: datetime) -> bool:
        """True once per scheduled minute."""
        minute = now.replace(second=0, microsecond=0)
        if not self.schedule.matches(minute):
            return False
        return self._last_scheduled_minute != minute

    async def run_scheduled_cycle(self, now: Optional[datetime] = None) -> Optional[List[CleanupResult]]:
        """Run cleanup if ``now`` falls on the schedule. Never raises."""
        now = now or self._clock()
        if not self._should_run_cleanup(now):
            return None
        self._last_scheduled_minute = now.replace(second=0, microsecond=0)
        try:
            return await self.run_cleanup('scheduled')
        except CleanupAlreadyRunningError:
            logger.warning("Scheduled cleanup skipped: a cleanup is already running")
        except Exception as e:
            logger.error(f"Scheduled cleanup job failed: {e}")
        return None

    async def _scheduler_loop(self) -> None:
        while True:
            await self.run_scheduled_cycle()
            await asyncio.sleep(self.config.check_interval_seconds)
