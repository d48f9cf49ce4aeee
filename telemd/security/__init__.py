"""Caller protection and privacy for the analytics entry point."""

from .rate_limiter import (
    RateLimiter,
    RateLimitEntry,
    RateLimitResult,
    extract_client_ip,
    get_identifier,
)
from .privacy import PrivacyFilter, anonymize_ip, pseudonymize

__all__ = [
    'RateLimiter',
    'RateLimitEntry',
    'RateLimitResult',
    'extract_client_ip',
    'get_identifier',
    'PrivacyFilter',
    'anonymize_ip',
    'pseudonymize',
]
