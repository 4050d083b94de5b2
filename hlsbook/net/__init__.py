"""
Network Layer.

This package owns the shared HTTP session and request pacing toward the
segment origin.
"""

from .rate_limiter import RequestPacer
from .session import close_connection_pool, create_session, get_connection_pool

__all__ = [
    "RequestPacer",
    "close_connection_pool",
    "create_session",
    "get_connection_pool",
]
