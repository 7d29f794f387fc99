"""API-specific test fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeAsyncRedis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from entitlements.billing.provider import StripeProvider
from webhook_helpers import live_subscription_stub


@pytest.fixture
def api_provider():
    """StripeProvider double shared by the gateway, processor and reconciler."""
    mock = MagicMock(spec=StripeProvider)
    mock.cancel_at_period_end = AsyncMock(return_value={"cancel_at_period_end": True})
    mock.get_live_subscription = AsyncMock(return_value=None)
    mock.retrieve_subscription = AsyncMock(side_effect=live_subscription_stub)
    return mock


@pytest.fixture
def api_client(tmp_path, api_provider):
    """FastAPI test client over a fresh SQLite database and fake Redis.

    Database, Redis and services are created inside the TestClient's own
    event loop so route handlers can use them.
    """
    from fastapi import HTTPException

    import entitlements.db.redis as redis_mod
    from entitlements.api.routes import api_router
    from entitlements.core.config import get_settings
    from entitlements.db import close_db, init_db
    from entitlements.main import attach_services, generic_exception_handler, http_exception_handler
    from entitlements.middleware.correlation import setup_correlation_middleware

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        await init_db(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
        fake_redis = FakeAsyncRedis(decode_responses=True)
        redis_mod._redis = fake_redis

        app.state.shutting_down = False
        attach_services(app, fake_redis)
        app.state.gateway.provider = api_provider
        app.state.processor.provider = api_provider
        app.state.reconciler.provider = api_provider
        yield
        redis_mod._redis = None
        await fake_redis.aclose()
        await close_db()

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Entitlement sync - Test Client",
        version="0.1.0",
        lifespan=test_lifespan,
    )

    setup_correlation_middleware(app)

    # Exception handlers (needed for debug_id testing)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    with TestClient(app) as client:
        yield client
