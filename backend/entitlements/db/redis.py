"""Shared Redis client backing the entitlement read-through cache.

Redis is optional for this service: the cache falls through to the
subscription store when it is absent, so a failed connection at startup is
logged and the client stays unset.
"""

import redis.asyncio as redis
import structlog

from entitlements.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> redis.Redis | None:
    """Connect the shared Redis client. Returns None when Redis is unreachable."""
    global _redis

    if _redis is not None:
        return _redis

    settings = get_settings()
    client = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )

    try:
        await client.ping()
    except (redis.ConnectionError, redis.TimeoutError, OSError) as exc:
        logger.warning("redis_unavailable_cache_disabled", error=str(exc))
        await client.aclose()
        return None

    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis | None:
    """Return the shared Redis client, or None if the cache is disabled."""
    return _redis
