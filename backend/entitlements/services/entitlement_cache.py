"""Read-through cache for resolved subscription/entitlement views.

Entries live in Redis for at most ``entitlement_cache_ttl_seconds`` (the
declared staleness bound) and are dropped by ``invalidate`` after every
committed subscription mutation. Usage counters are never cached. Redis
failures degrade to a cache miss.

Each user also has a generation counter that ``invalidate`` bumps. A
read-through fill remembers the generation it started under and is dropped
if the counter moved while the loader ran, so a view read before a mutation
is never written back after that mutation's invalidation.
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from entitlements.core.config import get_settings

logger = structlog.get_logger(__name__)


class EntitlementCache:
    KEY_PREFIX = "entitlements:view:"
    GENERATION_PREFIX = "entitlements:gen:"

    def __init__(self, redis: Redis | None, ttl_seconds: int | None = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or get_settings().entitlement_cache_ttl_seconds

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    def _generation_key(self, user_id: str) -> str:
        return f"{self.GENERATION_PREFIX}{user_id}"

    async def get(self, user_id: str) -> dict[str, Any] | None:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self._key(user_id))
        except RedisError as exc:
            logger.warning("entitlement_cache_read_failed", user_id=user_id, error=str(exc))
            return None
        return json.loads(raw) if raw else None

    async def set(self, user_id: str, view: dict[str, Any]) -> None:
        """Unconditional write. Read-through fills go through ``get_or_load``."""
        if self.redis is None:
            return
        try:
            await self.redis.set(self._key(user_id), json.dumps(view), ex=self.ttl_seconds)
        except RedisError as exc:
            logger.warning("entitlement_cache_write_failed", user_id=user_id, error=str(exc))

    async def invalidate(self, user_id: str) -> None:
        """Drop the entry and bump the generation so in-flight fills are discarded."""
        if self.redis is None:
            return
        generation_key = self._generation_key(user_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(generation_key)
                # Only fills that started within the last TTL can still be running
                pipe.expire(generation_key, self.ttl_seconds * 2)
                pipe.delete(self._key(user_id))
                await pipe.execute()
        except RedisError as exc:
            # Entry expires on its own within the TTL
            logger.warning("entitlement_cache_invalidate_failed", user_id=user_id, error=str(exc))

    async def _generation(self, user_id: str) -> str | None:
        try:
            return await self.redis.get(self._generation_key(user_id))
        except RedisError as exc:
            logger.warning("entitlement_cache_read_failed", user_id=user_id, error=str(exc))
            return None

    async def _fill(self, user_id: str, view: dict[str, Any], generation: str | None) -> None:
        """Write ``view`` only if no invalidation happened since ``generation`` was read."""
        generation_key = self._generation_key(user_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(generation_key)
                if await pipe.get(generation_key) != generation:
                    await pipe.unwatch()
                    logger.debug("entitlement_cache_fill_skipped", user_id=user_id)
                    return
                pipe.multi()
                pipe.set(self._key(user_id), json.dumps(view), ex=self.ttl_seconds)
                await pipe.execute()
        except WatchError:
            logger.debug("entitlement_cache_fill_skipped", user_id=user_id)
        except RedisError as exc:
            logger.warning("entitlement_cache_write_failed", user_id=user_id, error=str(exc))

    async def get_or_load(
        self,
        user_id: str,
        loader: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        """Return the cached view, loading it on a miss.

        The loaded view is always returned; it is only cached when no
        invalidation raced with the load.
        """
        cached = await self.get(user_id)
        if cached is not None:
            return cached

        if self.redis is None:
            return await loader()

        generation = await self._generation(user_id)
        view = await loader()
        await self._fill(user_id, view, generation)
        return view
