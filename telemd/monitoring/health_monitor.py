"""
Health monitoring for the analytics pipeline.

Runs a fixed set of independent probes on an interval and aggregates them
into one tri-state status. The monitor only reads component state; it
never mutates the batch queue or the sink.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil
import structlog

from telemd.config.analytics_config import MonitoringConfig

logger = structlog.get_logger(__name__)


class HealthState(Enum):
    """Health states, ordered by severity."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {HealthState.HEALTHY: 0, HealthState.WARNING: 1, HealthState.CRITICAL: 2}


@dataclass
class HealthCheck:
    """Result of one probe."""
    name: str
    status: HealthState
    message: str
    duration_ms: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status.value,
            'message': self.message,
            'duration_ms': round(self.duration_ms, 3),
            'metadata': self.metadata,
        }


@dataclass
class HealthStatus:
    """Aggregate of one round of probes."""
    overall: HealthState
    timestamp: datetime
    checks: List[HealthCheck]
    summary: Dict[str, int]

    @property
    def issues(self) -> List[HealthCheck]:
        return [c for c in self.checks if c.status != HealthState.HEALTHY]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.overall.value,
            'timestamp': self.timestamp.isoformat(),
            'checks': [c.to_dict() for c in self.checks],
            'summary': dict(self.summary),
        }


def aggregate_health(checks: List[HealthCheck]) -> HealthStatus:
    """Overall status is the worst individual status."""
    summary = {state.value: 0 for state in HealthState}
    for check in checks:
        summary[check.status.value] += 1

    overall = HealthState.HEALTHY
    for check in checks:
        if check.status.severity > overall.severity:
            overall = check.status

    return HealthStatus(
        overall=overall,
        timestamp=datetime.now(timezone.utc),
        checks=list(checks),
        summary=summary,
    )


def _process_memory_mb() -> Dict[str, float]:
    process = psutil.Process()
    memory = process.memory_info()
    return {
        'rss_mb': round(memory.rss / (1024 * 1024), 1),
        'vms_mb': round(memory.vms / (1024 * 1024), 1),
        'memory_percent': round(process.memory_percent(), 2),
    }


class HealthMonitor:
    """
    Probes the batch queue, the sink, process memory and storage.

    Memory thresholds are compared against the resident set size of the
    whole process as reported by psutil, not against Python heap usage.
    RSS includes interpreter and library overhead, so it reads higher
    than a heap figure would for the same workload.

    Args:
        batch_processor: Anything with ``get_stats()`` returning ``queue_size``.
        sink: Event sink; its ``ping()`` is the connectivity probe.
        config: Monitoring thresholds and interval.
        storage_probe: Optional coroutine function that raises when storage
            is unreachable. Without one the storage check reports healthy.
        metrics: Optional metrics collector with ``record_health``.
        memory_probe: Returns process memory figures in MB (``rss_mb`` is
            compared against the thresholds).
    """

    def __init__(self,
                 batch_processor: Any,
                 sink: Any,
                 config: Optional[MonitoringConfig] = None,
                 storage_probe: Optional[Callable[[], Awaitable[Any]]] = None,
                 metrics: Optional[Any] = None,
                 memory_probe: Callable[[], Dict[str, float]] = _process_memory_mb):
        self.batch_processor = batch_processor
        self.sink = sink
        self.config = config or MonitoringConfig()
        self.storage_probe = storage_probe
        self.metrics = metrics
        self.memory_probe = memory_probe

        self._last_health_check: Optional[HealthStatus] = None
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def start(self) -> None:
        """Start periodic health checks."""
        if self.is_running:
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info("Analytics health monitoring started",
                    interval_ms=self.config.health_check_interval_ms)

    async def stop(self) -> None:
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        try:
            await self._monitor_task
        except asyncio.CancelledError:
            pass
        self._monitor_task = None
        logger.info("Analytics health monitoring stopped")

    async def _monitor_loop(self) -> None:
        interval = self.config.health_check_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await self.perform_health_check()
            except Exception as e:
                logger.error("Error during health check", error=str(e))

    async def perform_health_check(self) -> HealthStatus:
        """Run every probe and store the aggregate as the last result."""
        checks = [
            await self.check_batch_processor(),
            await self.check_analytics_service(),
            await self.check_system_resources(),
            await self.check_database_connectivity(),
        ]
        status = aggregate_health(checks)

        previous = self._last_health_check
        self._last_health_check = status

        was_healthy = previous is None or previous.overall == HealthState.HEALTHY
        if status.overall != HealthState.HEALTHY and was_healthy:
            logger.warning("Analytics health check detected issues",
                           status=status.overall.value,
                           issues=[c.to_dict() for c in status.issues])
        elif status.overall == HealthState.HEALTHY and not was_healthy:
            logger.info("Analytics health recovered")

        if self.metrics is not None:
            self.metrics.record_health(status)
        return status

    async def check_now(self) -> HealthStatus:
        """On-demand check; shares the last-result slot with the timer."""
        return await self.perform_health_check()

    def get_last_health_check(self) -> Optional[HealthStatus]:
        return self._last_health_check

    # Probes

    async def check_batch_processor(self) -> HealthCheck:
        start_time = time.perf_counter()
        try:
            stats = self.batch_processor.get_stats()
            queue_size = stats['queue_size']

            status = HealthState.HEALTHY
            message = 'Batch processor is healthy'
            if queue_size > self.config.queue_critical_threshold:
                status = HealthState.CRITICAL
                message = f'Queue size is critically high: {queue_size}'
            elif queue_size > self.config.queue_warning_threshold:
                status = HealthState.WARNING
                message = f'Queue size is high: {queue_size}'

            return HealthCheck('batch_processor', status, message,
                               self._elapsed_ms(start_time), dict(stats))
        except Exception as e:
            return HealthCheck('batch_processor', HealthState.CRITICAL,
                               f'Batch processor check failed: {e}',
                               self._elapsed_ms(start_time))

    async def check_analytics_service(self) -> HealthCheck:
        start_time = time.perf_counter()
        try:
            metadata = await self.sink.ping()
            return HealthCheck('analytics_service', HealthState.HEALTHY,
                               'Analytics service is responsive',
                               self._elapsed_ms(start_time), dict(metadata or {}))
        except Exception as e:
            return HealthCheck('analytics_service', HealthState.CRITICAL,
                               f'Analytics service check failed: {e}',
                               self._elapsed_ms(start_time))

    async def check_system_resources(self) -> HealthCheck:
        start_time = time.perf_counter()
        try:
            memory = self.memory_probe()
            used_mb = memory['rss_mb']

            status = HealthState.HEALTHY
            message = f'Memory usage: {used_mb}MB'
            if used_mb > self.config.memory_critical_mb:
                status = HealthState.CRITICAL
                message = f'Critical memory usage: {used_mb}MB'
            elif used_mb > self.config.memory_warning_mb:
                status = HealthState.WARNING
                message = f'High memory usage: {used_mb}MB'

            return HealthCheck('system_resources', status, message,
                               self._elapsed_ms(start_time), dict(memory))
        except Exception as e:
            return HealthCheck('system_resources', HealthState.CRITICAL,
                               f'System resources check failed: {e}',
                               self._elapsed_ms(start_time))

    async def check_database_connectivity(self) -> HealthCheck:
        start_time = time.perf_counter()
        if self.storage_probe is None:
            return HealthCheck('database_connectivity', HealthState.HEALTHY,
                               'Database connectivity assumed healthy',
                               self._elapsed_ms(start_time),
                               {'note': 'no storage probe configured'})
        try:
            await self.storage_probe()
            return HealthCheck('database_connectivity', HealthState.HEALTHY,
                               'Database is reachable', self._elapsed_ms(start_time))
        except Exception as e:
            return HealthCheck('database_connectivity', HealthState.CRITICAL,
                               f'Database connectivity check failed: {e}',
                               self._elapsed_ms(start_time))

    @staticmethod
    def _elapsed_ms(start_time: float) -> float:
        return (time.perf_counter() - start_time) * 1000
