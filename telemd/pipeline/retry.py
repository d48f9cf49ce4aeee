"""
Classification-aware retry with exponential backoff.

``with_retry`` never raises: exhausted or non-retryable failures come back
as a failed ``RetryResult`` so analytics problems cannot break the host
application.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Generic, List, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

T = TypeVar('T')

RETRYABLE_MESSAGE_PATTERNS = ('network', 'timeout', 'timed out', 'connection')
RETRYABLE_STATUS_PATTERNS = ('503', '429', '502', '504')
DEFAULT_RETRYABLE_CODES = frozenset({
    'ECONNRESET', 'ECONNREFUSED', 'ETIMEDOUT', 'ENOTFOUND', 'EAI_AGAIN', 'EPIPE',
})


@dataclass
class RetryOptions:
    """Backoff parameters. Delays are in seconds."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_codes: FrozenSet[str] = DEFAULT_RETRYABLE_CODES

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)

    @classmethod
    def from_config(cls, analytics_config) -> 'RetryOptions':
        return cls(
            max_retries=analytics_config.max_retries,
            base_delay=analytics_config.retry_base_delay_ms / 1000.0,
            max_delay=analytics_config.retry_max_delay_ms / 1000.0,
            backoff_multiplier=analytics_config.backoff_multiplier,
        )


@dataclass
class RetryResult(Generic[T]):
    """Outcome of ``with_retry``."""
    success: bool
    value: Optional[T] = None
    attempts: int = 0
    delays: List[float] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


def _error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, 'code', None)
    if code is None:
        code = getattr(error, 'errno_name', None)
    return str(code) if code is not None else None


def is_retryable_error(error: BaseException,
                       retryable_codes: FrozenSet[str] = DEFAULT_RETRYABLE_CODES) -> bool:
    """Classify an error as transient.

    Transient errors are connection and timeout failures, messages carrying
    a 429/502/503/504 status, and errors whose ``code`` is in
    ``retryable_codes``.
    """
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    message = str(error).lower()
    if any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS):
        return True
    if any(status in message for status in RETRYABLE_STATUS_PATTERNS):
        return True

    code = _error_code(error)
    return code is not None and code in retryable_codes


async def with_retry(operation: Callable[[], Awaitable[T]],
                     options: Optional[RetryOptions] = None,
                     operation_name: str = 'operation',
                     sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                     on_retry: Optional[Callable[[int], None]] = None) -> RetryResult[T]:
    """Run ``operation`` with retries.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        options: Backoff settings.
        operation_name: Name used in log lines.
        sleep: Awaitable used for the inter-attempt delay.
        on_retry: Called with the failed attempt number before each wait.

    Returns:
        RetryResult describing success, the value, attempts made and the
        delays waited between them.
    """
    options = options or RetryOptions()
    result: RetryResult[T] = RetryResult(success=False)

    def _before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        result.delays.append(delay)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("Retrying analytics operation",
                       operation=operation_name,
                       attempt=retry_state.attempt_number,
                       max_retries=options.max_retries,
                       delay_seconds=delay,
                       error=str(error))
        if on_retry is not None:
            on_retry(retry_state.attempt_number)

    async def _attempt() -> T:
        result.attempts += 1
        return await operation()

    try:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(options.max_retries),
            wait=wait_exponential(
                multiplier=options.base_delay,
                exp_base=options.backoff_multiplier,
                max=options.max_delay,
            ),
            retry=retry_if_exception(
                lambda e: is_retryable_error(e, options.retryable_codes)
            ),
            before_sleep=_before_sleep,
            sleep=sleep,
            reraise=True,
        )
        result.value = await retrying(_attempt)
        result.success = True
        if result.attempts > 1:
            logger.info("Analytics operation succeeded after retry",
                        operation=operation_name, attempts=result.attempts)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        result.error = e
        logger.error("Analytics operation failed",
                     operation=operation_name,
                     attempts=result.attempts,
                     retryable=is_retryable_error(e, options.retryable_codes),
                     error=str(e))
    return result
