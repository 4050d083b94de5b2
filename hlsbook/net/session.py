"""
Shared aiohttp session used for playlist and segment requests.
"""

import asyncio
import logging

import aiohttp

log = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"
    ),
    "Accept": "*/*",
}

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock = asyncio.Lock()


def create_session(max_workers: int = 8, headers: dict | None = None) -> aiohttp.ClientSession:
    """Builds a ClientSession tuned for many small sequential CDN objects."""
    connector = aiohttp.TCPConnector(
        limit=max_workers * 2,  # Total connections
        limit_per_host=max_workers,  # Per-host (segment CDN)
        ttl_dns_cache=600,  # 10 minutes
        keepalive_timeout=30,
        enable_cleanup_closed=True,
        force_close=False,
    )
    timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=60)
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        headers={**DEFAULT_HEADERS, **(headers or {})},
    )


async def get_connection_pool(max_workers: int = 8) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession.

    This function ensures that only one connection pool is created for the
    lifetime of the application run.

    Args:
        max_workers: Maximum concurrent connections (should match the fetch config).
    """
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool
        _connection_pool = create_session(max_workers)
        log.debug(f"Created fetch pool with limit_per_host={max_workers}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared connection pool closed.")
