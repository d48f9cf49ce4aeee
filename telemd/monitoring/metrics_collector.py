"""
Prometheus collector base for telemd.

A collector registers its metrics on a private ``CollectorRegistry`` unless
one is passed in, so two services in one process (or two tests) never
collide on metric names.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import structlog
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = structlog.get_logger(__name__)


class MetricsCollector(ABC):
    """
    Owns a registry and the bookkeeping around each collection pass.

    Subclasses register metrics in ``_initialize_metrics`` and refresh
    point-in-time values (gauges) in ``collect_metrics``. Counters and
    histograms are normally updated by the components themselves.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self._created_at = time.time()
        self._last_collected_at = 0.0
        self._passes = 0

        self._pass_duration = self.create_histogram(
            'telemd_metrics_collection_duration_seconds',
            'Duration of one metrics collection pass',
            ['collector_type'],
        )
        self._pass_errors = self.create_counter(
            'telemd_metrics_collection_errors_total',
            'Metrics collection passes that raised',
            ['collector_type', 'error_type'],
        )

        self._initialize_metrics()

    @abstractmethod
    def _initialize_metrics(self) -> None:
        pass

    @abstractmethod
    async def collect_metrics(self) -> Dict[str, Any]:
        """Refresh point-in-time metrics and return the values read."""
        pass

    async def collect(self) -> Dict[str, Any]:
        """Run one collection pass. Errors are counted, logged and re-raised."""
        collector_type = type(self).__name__
        started = time.perf_counter()

        try:
            values = await self.collect_metrics()
        except Exception as e:
            self._pass_errors.labels(collector_type=collector_type,
                                     error_type=type(e).__name__).inc()
            logger.error("Metrics collection failed", collector=collector_type, error=str(e))
            raise

        elapsed = time.perf_counter() - started
        self._pass_duration.labels(collector_type=collector_type).observe(elapsed)
        self._passes += 1
        self._last_collected_at = time.time()
        logger.debug("Metrics collected", collector=collector_type,
                     values=len(values), duration_seconds=round(elapsed, 4))
        return values

    def get_registry(self) -> CollectorRegistry:
        return self.registry

    def generate_latest(self) -> bytes:
        """Text exposition of this collector's registry."""
        return generate_latest(self.registry)

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            'collector_type': type(self).__name__,
            'uptime_seconds': time.time() - self._created_at,
            'collection_count': self._passes,
            'last_collection_time': self._last_collected_at,
        }

    # Registration helpers

    def create_counter(self, name: str, description: str,
                       labelnames: Sequence[str] = ()) -> Counter:
        return Counter(name, description, list(labelnames), registry=self.registry)

    def create_gauge(self, name: str, description: str,
                     labelnames: Sequence[str] = ()) -> Gauge:
        return Gauge(name, description, list(labelnames), registry=self.registry)

    def create_histogram(self, name: str, description: str,
                         labelnames: Sequence[str] = (),
                         buckets: Optional[List[float]] = None) -> Histogram:
        if buckets is None:
            return Histogram(name, description, list(labelnames), registry=self.registry)
        return Histogram(name, description, list(labelnames),
                         buckets=buckets, registry=self.registry)
