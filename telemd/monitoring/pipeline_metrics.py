"""
Prometheus metrics for the analytics pipeline.

The batch processor, rate limiter, health monitor and retention manager
each take an optional metrics object and call the ``record_*`` hooks
below. Point-in-time values (queue depth, tracked identifiers) are
refreshed from component stats by ``collect_metrics``.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry

from .metrics_collector import MetricsCollector

HEALTH_STATUS_VALUES = {'healthy': 0, 'warning': 1, 'critical': 2}


class PipelineMetricsCollector(MetricsCollector):
    """Counters, gauges and histograms for every resilience component."""

    def __init__(self, registry: Optional[CollectorRegistry] = None,
                 batch_processor: Optional[Any] = None,
                 rate_limiter: Optional[Any] = None):
        self.batch_processor = batch_processor
        self.rate_limiter = rate_limiter
        super().__init__(registry)

    def bind(self, batch_processor: Optional[Any] = None,
             rate_limiter: Optional[Any] = None) -> None:
        """Attach the components whose stats feed the gauges."""
        if batch_processor is not None:
            self.batch_processor = batch_processor
        if rate_limiter is not None:
            self.rate_limiter = rate_limiter

    def _initialize_metrics(self) -> None:
        # Event pipeline
        self.events_received_total = self.create_counter(
            'telemd_events_received_total',
            'Events accepted into the batch queue'
        )
        self.events_delivered_total = self.create_counter(
            'telemd_events_delivered_total',
            'Events written to the sink'
        )
        self.events_dropped_total = self.create_counter(
            'telemd_events_dropped_total',
            'Events discarded after retries were exhausted'
        )
        self.batches_total = self.create_counter(
            'telemd_batches_total',
            'Batches processed by outcome',
            ['outcome']
        )
        self.retry_attempts_total = self.create_counter(
            'telemd_retry_attempts_total',
            'Delivery retries scheduled after a retryable failure'
        )
        self.batch_duration = self.create_histogram(
            'telemd_batch_delivery_duration_seconds',
            'Time to deliver a batch including retries',
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0]
        )
        self.queue_size = self.create_gauge(
            'telemd_queue_size',
            'Events waiting in the batch queue'
        )
        self.dead_letter_batches = self.create_gauge(
            'telemd_dead_letter_batches',
            'Batches held in the dead-letter buffer'
        )

        # Rate limiting
        self.rate_limit_decisions_total = self.create_counter(
            'telemd_rate_limit_decisions_total',
            'Rate limit decisions by outcome',
            ['outcome']
        )
        self.rate_limit_identifiers = self.create_gauge(
            'telemd_rate_limit_identifiers',
            'Identifiers currently tracked by the rate limiter'
        )

        # Health
        self.health_status = self.create_gauge(
            'telemd_health_status',
            'Health per check (0=healthy, 1=warning, 2=critical)',
            ['check']
        )

        # Retention
        self.cleanup_records_deleted_total = self.create_counter(
            'telemd_cleanup_records_deleted_total',
            'Records deleted by retention cleanup',
            ['policy']
        )
        self.cleanup_failures_total = self.create_counter(
            'telemd_cleanup_failures_total',
            'Retention policy executions that failed',
            ['policy']
        )
        self.cleanup_duration = self.create_histogram(
            'telemd_cleanup_duration_seconds',
            'Time to execute one retention policy',
            ['policy']
        )

    def record_event_received(self) -> None:
        self.events_received_total.inc()

    def record_delivery(self, result, duration_seconds: float) -> None:
        outcome = result.status.value
        if result.delivered:
            self.events_delivered_total.inc(result.event_count)
        elif outcome == 'dropped':
            self.events_dropped_total.inc(result.event_count)
        if result.batch_id is not None:
            self.batches_total.labels(outcome=outcome).inc()
            self.batch_duration.observe(duration_seconds)

    def record_retry(self) -> None:
        self.retry_attempts_total.inc()

    def record_rate_limit(self, allowed: bool) -> None:
        self.rate_limit_decisions_total.labels(outcome='allowed' if allowed else 'rejected').inc()

    def record_health(self, status) -> None:
        for check in status.checks:
            self.health_status.labels(check=check.name).set(
                HEALTH_STATUS_VALUES[check.status.value])
        self.health_status.labels(check='overall').set(HEALTH_STATUS_VALUES[status.overall.value])

    def record_cleanup(self, result) -> None:
        self.cleanup_duration.labels(policy=result.policy).observe(result.execution_time)
        if result.success:
            self.cleanup_records_deleted_total.labels(policy=result.policy).inc(result.deleted_records)
        else:
            self.cleanup_failures_total.labels(policy=result.policy).inc()

    async def collect_metrics(self) -> Dict[str, Any]:
        """Refresh gauges from component stats."""
        metrics_data: Dict[str, Any] = {}

        if self.batch_processor is not None:
            stats = self.batch_processor.get_stats()
            self.queue_size.set(stats['queue_size'])
            self.dead_letter_batches.set(stats['dead_letter_batches'])
            metrics_data['queue_size'] = stats['queue_size']
            metrics_data['dead_letter_batches'] = stats['dead_letter_batches']

        if self.rate_limiter is not None:
            stats = self.rate_limiter.get_stats()
            self.rate_limit_identifiers.set(stats['total_identifiers'])
            metrics_data['rate_limit_identifiers'] = stats['total_identifiers']

        return metrics_data
