"""HTTP surface for operators."""

from .ops_api import create_app, create_ops_api, rate_limited

__all__ = ['create_app', 'create_ops_api', 'rate_limited']
