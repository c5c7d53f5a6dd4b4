"""Redis async connection pool backing the report endpoint rate limiter.

Redis is optional: when it cannot be reached the service keeps running and
report ingestion is simply not rate limited.
"""

from __future__ import annotations

import asyncio
import re

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

# Pattern to redact passwords from Redis URLs
_REDIS_URL_PASSWORD = re.compile(r"(rediss?://[^:]*:)[^@]+(@)")

_pool: aioredis.Redis | None = None
_MAX_RETRIES = 3
_BASE_DELAY = 0.5


def redact_url(url: str) -> str:
    """Redact password from Redis URL for safe logging."""
    return _REDIS_URL_PASSWORD.sub(r"\1***\2", url)


async def init_redis(url: str, pool_size: int = 10) -> aioredis.Redis | None:
    """Connect with exponential backoff; returns None if Redis stays unreachable."""
    global _pool
    for attempt in range(1, _MAX_RETRIES + 1):
        try:
            _pool = aioredis.from_url(
                url,
                max_connections=pool_size,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await _pool.ping()
            logger.info("redis_connected", url=redact_url(url), pool_size=pool_size)
            return _pool
        except (aioredis.ConnectionError, OSError) as exc:
            delay = _BASE_DELAY * (2 ** (attempt - 1))
            if attempt == _MAX_RETRIES:
                logger.warning(
                    "redis_unavailable",
                    url=redact_url(url),
                    error=str(exc),
                    effect="report rate limiting disabled",
                )
                _pool = None
                return None
            logger.info("redis_connect_retry", attempt=attempt, delay=delay, error=str(exc))
            await asyncio.sleep(delay)
    return None


def get_redis() -> aioredis.Redis | None:
    """Return the current Redis client, or None if unavailable."""
    return _pool


async def ping() -> bool:
    """Check if Redis is reachable."""
    if _pool is None:
        return False
    try:
        return await _pool.ping()
    except Exception:
        return False


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
        logger.info("redis_closed")
