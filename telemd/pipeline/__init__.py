"""
Event pipeline for telemd.

Producer -> batch queue -> retry executor -> sink.
"""

from .models import Event, EventContext, EventType, Batch, DeliveryStatus, FlushResult
from .retry import RetryOptions, RetryResult, with_retry, is_retryable_error
from .sinks import EventSink, InMemoryEventSink, SQLiteEventSink
from .batch_processor import EventBatchProcessor

__all__ = [
    'Event',
    'EventContext',
    'EventType',
    'Batch',
    'DeliveryStatus',
    'FlushResult',
    'RetryOptions',
    'RetryResult',
    'with_retry',
    'is_retryable_error',
    'EventSink',
    'InMemoryEventSink',
    'SQLiteEventSink',
    'EventBatchProcessor',
]
