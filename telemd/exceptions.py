"""
Exception types for the telemd analytics layer.

Delivery failures never surface to producers; these exceptions cover
configuration mistakes, operator errors and rate-limit rejections.
"""

import math
import time
from typing import Optional


class TelemetryError(Exception):
    """Base class for all telemd errors."""


class ConfigurationError(TelemetryError):
    """Raised when configuration values fail validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Invalid analytics configuration: " + "; ".join(self.errors))


class RateLimitExceededError(TelemetryError):
    """Raised by callers that turn a rejected rate-limit check into an error."""

    def __init__(self, identifier: str, reset_time: float, remaining: int = 0,
                 now: Optional[float] = None):
        self.identifier = identifier
        self.reset_time = reset_time
        self.remaining = remaining
        self._now = now
        super().__init__(
            f"Rate limit exceeded. Try again in {self.retry_after_seconds} seconds"
        )

    @property
    def retry_after_seconds(self) -> int:
        now = self._now if self._now is not None else time.time()
        return max(0, math.ceil(self.reset_time - now))


class CleanupAlreadyRunningError(TelemetryError):
    """A retention cleanup was requested while another one is in progress."""

    def __init__(self):
        super().__init__("Cleanup job is already running")


class PolicyNotFoundError(TelemetryError):
    """No retention policy exists with the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Retention policy not found: {name}")


class InvalidPolicyError(TelemetryError):
    """A retention policy definition or update is not acceptable."""


class StorageError(TelemetryError):
    """The storage layer rejected an operation."""
