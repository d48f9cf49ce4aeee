"""
Analytics service: builds every component from one configuration object
and owns their lifecycle.
"""

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from telemd.config.analytics_config import TelemdConfig
from telemd.monitoring.health_monitor import HealthMonitor
from telemd.monitoring.pipeline_metrics import PipelineMetricsCollector
from telemd.pipeline.batch_processor import EventBatchProcessor
from telemd.pipeline.models import Event, FlushResult
from telemd.pipeline.sinks import EventSink, SQLiteEventSink
from telemd.security.privacy import PrivacyFilter
from telemd.security.rate_limiter import RateLimiter
from telemd.storage.retention_manager import DataRetentionManager
from telemd.storage.retention_store import RetentionStore, SQLiteRetentionStore

logger = structlog.get_logger(__name__)


class AnalyticsService:
    """
    Composition root for the analytics layer.

    Components are constructed eagerly and started explicitly with
    ``start()``; ``stop()`` stops the background jobs and drains the batch
    queue.
    """

    def __init__(self,
                 config: Optional[TelemdConfig] = None,
                 sink: Optional[EventSink] = None,
                 retention_store: Optional[RetentionStore] = None,
                 metrics: Optional[PipelineMetricsCollector] = None):
        self.config = config or TelemdConfig()

        if metrics is None and self.config.monitoring.enable_metrics:
            metrics = PipelineMetricsCollector()
        self.metrics = metrics

        self.sink = sink or SQLiteEventSink(self.config.database_path)
        self.retention_store = retention_store or SQLiteRetentionStore(self.config.database_path)
        self.privacy_filter = PrivacyFilter(self.config.security)

        self.batch_processor = EventBatchProcessor(
            self.sink,
            self.config.analytics,
            metrics=self.metrics,
            transform=self.privacy_filter,
        )
        self.rate_limiter = RateLimiter(self.config.rate_limit, metrics=self.metrics)
        self.health_monitor = HealthMonitor(
            self.batch_processor,
            self.sink,
            self.config.monitoring,
            storage_probe=self.retention_store.ping,
            metrics=self.metrics,
        )
        self.retention_manager = DataRetentionManager(
            self.retention_store,
            self.config.retention,
            metrics=self.metrics,
        )

        if self.metrics is not None:
            self.metrics.bind(batch_processor=self.batch_processor, rate_limiter=self.rate_limiter)

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self.loop = asyncio.get_running_loop()

        await self.batch_processor.start()
        if self.config.rate_limit.enabled:
            await self.rate_limiter.start()
        if self.config.monitoring.enable_health_checks:
            await self.health_monitor.start()
        await self.retention_manager.start()

        self._started = True
        logger.info("Analytics service started", environment=self.config.environment)

    async def stop(self) -> None:
        if not self._started:
            return

        await self.retention_manager.stop()
        await self.health_monitor.stop()
        await self.rate_limiter.stop()
        await self.batch_processor.shutdown()

        self._started = False
        logger.info("Analytics service stopped")

    async def track_event(self, event: Event, identifier: Optional[str] = None) -> List[FlushResult]:
        """
        Entry point for producers.

        When ``identifier`` is given and rate limiting is enabled, raises
        ``RateLimitExceededError`` once the caller is over its limit.
        Delivery failures never raise.
        """
        if identifier is not None and self.config.rate_limit.enabled:
            self.rate_limiter.enforce(identifier)
        return await self.batch_processor.add_event(event)

    async def get_overview(self) -> Dict[str, Any]:
        """Combined operational snapshot."""
        last_health = self.health_monitor.get_last_health_check()
        return {
            'environment': self.config.environment,
            'started': self._started,
            'queue': self.batch_processor.get_stats(),
            'rate_limit': self.rate_limiter.get_stats(),
            'health': last_health.to_dict() if last_health else None,
            'retention': self.retention_manager.get_retention_stats().to_dict(),
        }
