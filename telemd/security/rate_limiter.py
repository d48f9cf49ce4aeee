"""
Rate limiting for the analytics ingestion endpoint.

Fixed-window counters keyed by caller identity (``user:<id>`` or
``ip:<address>``). Idle entries are evicted by a periodic sweep so memory
stays bounded.
"""

import asyncio
import json
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from telemd.config.analytics_config import RateLimitConfig
from telemd.exceptions import RateLimitExceededError

logger = structlog.get_logger(__name__)

UNKNOWN_ADDRESS = 'unknown'


@dataclass
class RateLimitEntry:
    """Per-identifier window counter. Timestamps are epoch seconds."""
    count: int
    window_start: float
    last_request: float


@dataclass
class RateLimitResult:
    """Decision for one request."""
    allowed: bool
    remaining: int
    reset_time: float
    total_hits: int

    def retry_after_seconds(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_time - now))


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def extract_client_ip(headers: Optional[Mapping[str, str]]) -> str:
    """Best-effort client address from proxy headers."""
    forwarded_for = _header(headers, 'X-Forwarded-For')
    if forwarded_for:
        first = forwarded_for.split(',')[0].strip()
        return first or UNKNOWN_ADDRESS

    real_ip = _header(headers, 'X-Real-IP')
    if real_ip:
        return real_ip.strip()

    return UNKNOWN_ADDRESS


def get_identifier(user_id: Optional[str] = None,
                   headers: Optional[Mapping[str, str]] = None,
                   remote_addr: Optional[str] = None) -> str:
    """Rate-limit key: authenticated user first, network address otherwise."""
    if user_id:
        return f"user:{user_id}"
    address = extract_client_ip(headers)
    if address == UNKNOWN_ADDRESS and remote_addr:
        address = remote_addr
    return f"ip:{address}"


class RateLimiter:
    """
    Fixed-window rate limiter.

    Each identifier gets ``max_requests`` calls per window of ``window_ms``;
    the window restarts on the first call made after it has elapsed.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 metrics: Optional[Any] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or RateLimitConfig()
        self.metrics = metrics
        self._clock = clock
        self._store: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def window_seconds(self) -> float:
        return self.config.window_ms / 1000.0

    def check_rate_limit(self, identifier: str) -> RateLimitResult:
        """Count a request for ``identifier`` and decide whether it is allowed."""
        now = self._clock()
        window = self.window_seconds
        max_requests = self.config.max_requests

        with self._lock:
            entry = self._store.get(identifier)
            if entry is None:
                entry = RateLimitEntry(count=0, window_start=now, last_request=now)
                self._store[identifier] = entry

            if now - entry.window_start >= window:
                entry.count = 0
                entry.window_start = now

            entry.count += 1
            entry.last_request = now

            result = RateLimitResult(
                allowed=entry.count <= max_requests,
                remaining=max(0, max_requests - entry.count),
                reset_time=entry.window_start + window,
                total_hits=entry.count,
            )

        if not result.allowed:
            logger.warning("Rate limit exceeded",
                           identifier=identifier,
                           total_hits=result.total_hits,
                           reset_time=result.reset_time)
        if self.metrics is not None:
            self.metrics.record_rate_limit(result.allowed)
        return result

    def enforce(self, identifier: str) -> RateLimitResult:
        """Like ``check_rate_limit`` but raises when the request is rejected."""
        result = self.check_rate_limit(identifier)
        if not result.allowed:
            raise RateLimitExceededError(identifier, result.reset_time,
                                         result.remaining, now=self._clock())
        return result

    def sweep(self) -> int:
        """Evict entries idle for more than two windows. Returns the number evicted."""
        now = self._clock()
        idle_limit = self.window_seconds * 2
        with self._lock:
            expired = [key for key, entry in self._store.items()
                       if now - entry.last_request > idle_limit]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug("Evicted idle rate limit entries", evicted=len(expired))
        return len(expired)

    def reset_rate_limit(self, identifier: str) -> bool:
        """Forget an identifier's counter (admin function)."""
        with self._lock:
            return self._store.pop(identifier, None) is not None

    def get_entry(self, identifier: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._store.get(identifier)
            return RateLimitEntry(**asdict(entry)) if entry else None

    def get_stats(self) -> Dict[str, Any]:
        """Tracked identifiers, approximate memory footprint and top consumers."""
        with self._lock:
            snapshot = {key: asdict(entry) for key, entry in self._store.items()}

        consumers = sorted(
            ({'identifier': key, 'count': entry['count'],
              'last_request': entry['last_request']}
             for key, entry in snapshot.items()),
            key=lambda c: c['count'],
            reverse=True,
        )
        return {
            'total_identifiers': len(snapshot),
            'memory_usage': len(json.dumps(snapshot)),
            'top_consumers': consumers[:self.config.top_consumers],
        }

    async def start(self) -> None:
        """Start the periodic idle-entry sweep."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        interval = self.config.sweep_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Rate limit sweep failed", error=str(e))

    async def stop(self) -> None:
        """Stop the sweep and drop all counters."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        with self._lock:
            self._store.clear()
