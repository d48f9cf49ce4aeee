"""
telemd - resilience and lifecycle layer for an analytics pipeline.

Batched event delivery with retries, per-caller rate limiting, health
monitoring and chunked data retention.
"""

__version__ = "0.1.0"
