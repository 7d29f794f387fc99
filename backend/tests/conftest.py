"""Shared test fixtures: SQLite test database, fake Redis, wired services."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Settings are cached on first use, so these must be set before any
# entitlements module calls get_settings().
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_PRICE_GROWTH_MONTHLY", "price_test_growth_mo")
os.environ.setdefault("STRIPE_PRICE_GROWTH_ANNUAL", "price_test_growth_an")
os.environ.setdefault("STRIPE_PRICE_ACCELERATE_MONTHLY", "price_test_accel_mo")
os.environ.setdefault("STRIPE_PRICE_ACCELERATE_ANNUAL", "price_test_accel_an")
os.environ.setdefault("SERVICE_API_TOKEN", "")

from fakeredis import FakeAsyncRedis  # noqa: E402

from entitlements.billing.deduplicator import EventDeduplicator  # noqa: E402
from entitlements.billing.processor import WebhookProcessor  # noqa: E402
from entitlements.billing.provider import StripeProvider  # noqa: E402
from entitlements.db.base import close_db, get_session_factory, init_db  # noqa: E402
from entitlements.services.audit import AuditLog  # noqa: E402
from entitlements.services.entitlement_cache import EntitlementCache  # noqa: E402
from entitlements.services.subscription_store import SubscriptionStore  # noqa: E402
from entitlements.services.sync_gateway import SyncGateway  # noqa: E402
from entitlements.services.usage_ledger import UsageLedger  # noqa: E402
from webhook_helpers import live_subscription_stub  # noqa: E402


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite database with all tables created.

    A file (not :memory:) so concurrent sessions use separate connections
    and genuinely contend on the database lock.
    """
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    yield get_session_factory()
    await close_db()


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cache(redis):
    return EntitlementCache(redis, ttl_seconds=60)


@pytest.fixture
def store(db, cache):
    return SubscriptionStore(cache=cache)


@pytest.fixture
def ledger(store):
    return UsageLedger(store)


@pytest.fixture
def deduplicator(db):
    return EventDeduplicator()


@pytest.fixture
def audit(db):
    return AuditLog()


@pytest.fixture
def provider():
    """StripeProvider double: no network, cancellation recorded."""
    mock = MagicMock(spec=StripeProvider)
    mock.cancel_at_period_end = AsyncMock(return_value={"cancel_at_period_end": True})
    mock.get_live_subscription = AsyncMock(return_value=None)
    mock.list_subscriptions = AsyncMock(return_value=[])
    mock.retrieve_subscription = AsyncMock(side_effect=live_subscription_stub)
    return mock


@pytest.fixture
def processor(store, deduplicator, provider, audit):
    return WebhookProcessor(store, deduplicator, provider, audit)


@pytest.fixture
def gateway(store, ledger, cache, provider, audit):
    return SyncGateway(store, ledger, cache, provider, audit)
