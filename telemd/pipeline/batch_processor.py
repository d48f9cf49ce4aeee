"""
Event batch processor.

Accumulates events in memory and delivers them to the sink in batches,
either when the queue reaches ``batch_size`` or when the flush timer fires.
At most one flush is in flight per processor; events added during a flush
go to the live queue, never into the batch being delivered.

Queue contents live only in process memory: an uncontrolled crash loses
whatever has not been flushed. ``shutdown()`` drains the queue.
"""

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from telemd.config.analytics_config import AnalyticsConfig
from .models import Batch, DeliveryStatus, Event, FlushResult
from .retry import RetryOptions, with_retry
from .sinks import EventSink

logger = structlog.get_logger(__name__)

SHUTDOWN_POLL_SECONDS = 0.1


class EventBatchProcessor:
    """
    Batches analytics events and delivers them through the retry executor.

    Delivery failures are logged and reported through ``FlushResult``;
    they never propagate to the caller of ``add_event``.
    """

    def __init__(self,
                 sink: EventSink,
                 config: Optional[AnalyticsConfig] = None,
                 retry_options: Optional[RetryOptions] = None,
                 metrics: Optional[Any] = None,
                 transform: Optional[Callable[[Event], Event]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Args:
            sink: Downstream event sink.
            config: Batch and retry settings.
            retry_options: Overrides the retry settings derived from ``config``.
            metrics: Optional PipelineMetricsCollector.
            transform: Applied to every event before it is queued.
            sleep: Awaitable used by the retry executor between attempts.
        """
        self.sink = sink
        self.config = config or AnalyticsConfig()
        self.retry_options = retry_options or RetryOptions.from_config(self.config)
        self.metrics = metrics
        self.transform = transform
        self._sleep = sleep

        self._queue: List[Event] = []
        self._is_processing = False
        self._batch_counter = 0
        self._flush_task: Optional[asyncio.Task] = None
        self._timer_flush: Optional[asyncio.Future] = None

        capacity = self.config.dead_letter_capacity
        self._dead_letters: Optional[Deque[Batch]] = deque(maxlen=capacity) if capacity > 0 else None

        self._events_received = 0
        self._events_delivered = 0
        self._events_dropped = 0
        self._batches_delivered = 0
        self._batches_failed = 0

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def is_running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    async def add_event(self, event: Event) -> List[FlushResult]:
        """
        Add an event to the batch queue.

        Returns the results of any delivery this call triggered: empty when
        the event was only queued.
        """
        self._events_received += 1
        if self.metrics is not None:
            self.metrics.record_event_received()

        if self.transform is not None:
            event = self.transform(event)

        if not self.config.enable_batching:
            return [await self._process_single_event(event)]

        self._queue.append(event)

        if len(self._queue) >= self.config.batch_size:
            return await self.flush()
        return []

    async def flush(self, drain: bool = False) -> List[FlushResult]:
        """
        Deliver queued events.

        A no-op while the queue is empty or another flush is running. Each
        batch holds at most ``batch_size`` events; full batches that pile up
        during delivery are sent before returning. With ``drain`` the
        trailing partial batch is sent as well.
        """
        if not self._queue or self._is_processing:
            return []

        self._is_processing = True
        results: List[FlushResult] = []
        try:
            while self._queue:
                if results and not drain and len(self._queue) < self.config.batch_size:
                    break
                batch = self._create_batch()
                results.append(await self._process_batch(batch))
        finally:
            self._is_processing = False
        return results

    def _create_batch(self) -> Batch:
        """Move up to ``batch_size`` events from the live queue into a new batch."""
        self._batch_counter += 1
        size = self.config.batch_size
        events, self._queue = self._queue[:size], self._queue[size:]
        return Batch(
            id=f"batch-{int(time.time() * 1000)}-{self._batch_counter}",
            events=tuple(events),
            created_at=datetime.now(timezone.utc),
        )

    async def _deliver_events(self, events) -> None:
        await asyncio.gather(*(self.sink.record_event(event) for event in events))

    async def _process_single_event(self, event: Event) -> FlushResult:
        """Deliver one event immediately (batching disabled)."""
        retry = await with_retry(
            lambda: self.sink.record_event(event),
            self.retry_options,
            'process-single-event',
            sleep=self._sleep,
            on_retry=self._on_retry,
        )
        if retry.success:
            self._events_delivered += 1
            status = DeliveryStatus.DELIVERED
        else:
            self._events_dropped += 1
            status = DeliveryStatus.DROPPED
        result = FlushResult(
            status=status,
            event_count=1,
            attempts=retry.attempts,
            error=retry.error_message,
        )
        if self.metrics is not None:
            self.metrics.record_delivery(result, 0.0)
        return result

    async def _process_batch(self, batch: Batch) -> FlushResult:
        """Deliver all events of a batch as one unit through the retry executor."""
        start_time = time.monotonic()

        def _count_retry(attempt: int) -> None:
            batch.retry_count += 1
            self._on_retry(attempt)

        retry = await with_retry(
            lambda: self._deliver_events(batch.events),
            self.retry_options,
            f'process-batch-{batch.id}',
            sleep=self._sleep,
            on_retry=_count_retry,
        )
        duration = time.monotonic() - start_time

        if retry.success:
            self._batches_delivered += 1
            self._events_delivered += len(batch)
            status = DeliveryStatus.DELIVERED
            logger.debug("Batch delivered", batch_id=batch.id,
                         events=len(batch), attempts=retry.attempts,
                         duration_seconds=round(duration, 4))
        else:
            self._batches_failed += 1
            if self._dead_letters is not None:
                self._dead_letters.append(batch)
                status = DeliveryStatus.DEAD_LETTERED
            else:
                self._events_dropped += len(batch)
                status = DeliveryStatus.DROPPED
            logger.error("Batch delivery failed",
                         batch_id=batch.id,
                         events=len(batch),
                         attempts=retry.attempts,
                         outcome=status.value,
                         error=retry.error_message)

        result = FlushResult(
            status=status,
            batch_id=batch.id,
            event_count=len(batch),
            attempts=retry.attempts,
            error=retry.error_message,
        )
        if self.metrics is not None:
            self.metrics.record_delivery(result, duration)
        return result

    def _on_retry(self, attempt: int) -> None:
        if self.metrics is not None:
            self.metrics.record_retry()

    def get_dead_letters(self) -> List[Batch]:
        """Batches that exhausted their retries, oldest first."""
        return list(self._dead_letters) if self._dead_letters is not None else []

    async def requeue_dead_letters(self) -> int:
        """
        Put dead-lettered events back at the front of the live queue.

        Must run on the loop that owns the queue.
        """
        if not self._dead_letters:
            return 0
        events: List[Event] = []
        while self._dead_letters:
            events.extend(self._dead_letters.popleft().events)
        self._queue = events + self._queue
        logger.info("Requeued dead-lettered events", events=len(events))
        return len(events)

    async def start(self) -> None:
        """Start the periodic flush timer."""
        if not self.config.enable_batching:
            logger.info("Batching disabled, flush timer not started")
            return
        if self.is_running:
            logger.warning("Batch processor flush timer is already running")
            return
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info("Batch processor started",
                    batch_size=self.config.batch_size,
                    flush_interval_ms=self.config.flush_interval_ms)

    async def stop(self) -> None:
        """Stop the flush timer. A flush already in progress keeps running."""
        if self._flush_task is None:
            return
        self._flush_task.cancel()
        try:
            await self._flush_task
        except asyncio.CancelledError:
            pass
        self._flush_task = None

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval_seconds)
            if not self._queue:
                continue
            try:
                self._timer_flush = asyncio.ensure_future(self.flush())
                # Shielded so stopping the timer cannot abandon a captured batch
                await asyncio.shield(self._timer_flush)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error during automatic flush", error=str(e))

    async def shutdown(self) -> None:
        """
        Stop the timer and deliver every queued event.

        Waits, polling, for any in-flight flush to finish.
        """
        await self.stop()

        while self._queue or self._is_processing:
            if self._is_processing:
                await asyncio.sleep(SHUTDOWN_POLL_SECONDS)
            else:
                await self.flush(drain=True)

        logger.info("Batch processor shut down",
                    events_delivered=self._events_delivered,
                    events_dropped=self._events_dropped,
                    dead_letters=len(self.get_dead_letters()))

    def get_stats(self) -> Dict[str, Any]:
        """Current queue statistics."""
        return {
            'queue_size': len(self._queue),
            'is_processing': self._is_processing,
            'batch_size': self.config.batch_size,
            'flush_interval': self.config.flush_interval_ms,
            'events_received': self._events_received,
            'events_delivered': self._events_delivered,
            'events_dropped': self._events_dropped,
            'batches_delivered': self._batches_delivered,
            'batches_failed': self._batches_failed,
            'dead_letter_batches': len(self.get_dead_letters()),
        }
