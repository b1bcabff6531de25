"""
Transport layer for b2cli.
"""

from b2cli.transport.http import AsyncTransport
from b2cli.transport.retry import RetryPolicy, is_transient

__all__ = ["AsyncTransport", "RetryPolicy", "is_transient"]
