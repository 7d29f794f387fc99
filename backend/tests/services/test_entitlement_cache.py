"""Tests for the Redis read-through entitlement cache."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from entitlements.services.entitlement_cache import EntitlementCache

pytestmark = pytest.mark.unit


async def test_set_then_get(cache):
    await cache.set("user_1", {"tier": "growth"})
    assert await cache.get("user_1") == {"tier": "growth"}


async def test_entries_expire_within_ttl(cache, redis):
    await cache.set("user_1", {"tier": "growth"})
    ttl = await redis.ttl("entitlements:view:user_1")
    assert 0 < ttl <= 60


async def test_invalidate_drops_entry(cache):
    await cache.set("user_1", {"tier": "growth"})
    await cache.invalidate("user_1")
    assert await cache.get("user_1") is None


async def test_get_or_load_calls_loader_once(cache):
    loader = AsyncMock(return_value={"tier": "starter"})

    first = await cache.get_or_load("user_1", loader)
    second = await cache.get_or_load("user_1", loader)

    assert first == second == {"tier": "starter"}
    loader.assert_awaited_once()


async def test_without_redis_every_read_is_a_miss():
    cache = EntitlementCache(None, ttl_seconds=60)
    loader = AsyncMock(return_value={"tier": "starter"})

    await cache.set("user_1", {"tier": "growth"})
    await cache.invalidate("user_1")
    assert await cache.get("user_1") is None
    assert await cache.get_or_load("user_1", loader) == {"tier": "starter"}
    assert await cache.get_or_load("user_1", loader) == {"tier": "starter"}
    assert loader.await_count == 2


async def test_redis_errors_degrade_to_miss():
    broken = MagicMock()
    broken.get = AsyncMock(side_effect=RedisError("connection refused"))
    broken.set = AsyncMock(side_effect=RedisError("connection refused"))
    broken.pipeline.side_effect = RedisError("connection refused")
    cache = EntitlementCache(broken, ttl_seconds=60)
    loader = AsyncMock(return_value={"tier": "growth"})

    assert await cache.get_or_load("user_1", loader) == {"tier": "growth"}
    await cache.set("user_1", {"tier": "growth"})
    await cache.invalidate("user_1")


# ============================================================================
# Fill vs. invalidation ordering
# ============================================================================


async def test_fill_dropped_when_invalidated_during_load(cache):
    """A view read before a mutation must not be cached after its invalidation."""

    async def loader():
        stale = {"tier": "starter", "version": 1}
        await cache.invalidate("user_1")  # mutation commits while the load is in flight
        return stale

    served = await cache.get_or_load("user_1", loader)

    assert served == {"tier": "starter", "version": 1}
    assert await cache.get("user_1") is None


async def test_fill_kept_when_invalidation_preceded_load(cache):
    await cache.invalidate("user_1")
    loader = AsyncMock(return_value={"tier": "growth", "version": 2})

    await cache.get_or_load("user_1", loader)

    assert await cache.get("user_1") == {"tier": "growth", "version": 2}


async def test_invalidate_bumps_generation_with_expiry(cache, redis):
    await cache.invalidate("user_1")
    await cache.invalidate("user_1")

    assert await redis.get("entitlements:gen:user_1") == "2"
    assert 0 < await redis.ttl("entitlements:gen:user_1") <= 120
