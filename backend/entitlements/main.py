"""Entitlement sync service: FastAPI application entry point."""

import asyncio
import contextlib
import signal
import threading
import uuid
from contextlib import asynccontextmanager

# configure_structlog MUST run before the other package imports: structlog
# caches the processor chain on first use.
from entitlements.core.logging import configure_structlog
from entitlements.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from entitlements.api.routes import api_router
from entitlements.billing.deduplicator import EventDeduplicator
from entitlements.billing.processor import WebhookProcessor
from entitlements.billing.provider import StripeProvider
from entitlements.core.config import get_settings
from entitlements.db import close_db, close_redis, init_db, init_redis
from entitlements.middleware.correlation import get_correlation_id, setup_correlation_middleware
from entitlements.services.audit import AuditLog
from entitlements.services.entitlement_cache import EntitlementCache
from entitlements.services.reconciliation import Reconciler
from entitlements.services.subscription_store import SubscriptionStore
from entitlements.services.sync_gateway import SyncGateway
from entitlements.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)


def check_stripe_config() -> None:
    """Log missing Stripe settings at startup.

    Nothing here is fatal: a missing webhook secret turns the webhook into a
    503, a missing API key turns provider calls into 503s, and an unmapped
    price falls back to the price lookup key / subscription metadata.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.warning("stripe_webhook_secret_missing")
    if not settings.stripe_secret_key:
        logger.warning("stripe_secret_key_missing")

    prices = {
        "stripe_price_growth_monthly": settings.stripe_price_growth_monthly,
        "stripe_price_growth_annual": settings.stripe_price_growth_annual,
        "stripe_price_accelerate_monthly": settings.stripe_price_accelerate_monthly,
        "stripe_price_accelerate_annual": settings.stripe_price_accelerate_annual,
    }
    missing = [name for name, value in prices.items() if not value]
    if missing:
        logger.warning("stripe_price_ids_missing", missing=missing)


def attach_services(app: FastAPI, redis: Redis | None) -> None:
    """Build the service graph on app.state. The database must be initialized."""
    cache = EntitlementCache(redis)
    store = SubscriptionStore(cache=cache)
    deduplicator = EventDeduplicator()
    provider = StripeProvider()
    ledger = UsageLedger(store)
    audit = AuditLog()

    app.state.cache = cache
    app.state.store = store
    app.state.ledger = ledger
    app.state.gateway = SyncGateway(store, ledger, cache, provider, audit)
    app.state.processor = WebhookProcessor(store, deduplicator, provider, audit)
    app.state.reconciler = Reconciler(store, deduplicator, provider, audit)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open storage, wire services, start reconciliation; undo in reverse on shutdown."""
    # SIGTERM flips this so /api/health returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    redis = await init_redis()
    logger.info("redis_initialized", cache_enabled=redis is not None)

    check_stripe_config()
    attach_services(app, redis)

    reconciliation_task = None
    if settings.reconciliation_enabled:
        reconciliation_task = asyncio.create_task(app.state.reconciler.run_forever())

    yield

    # Shutdown
    logger.info("shutdown_begin")
    if reconciliation_task is not None:
        reconciliation_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconciliation_task
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTPException → JSON body with a debug_id that matches the server-side log line."""
    debug_id = str(uuid.uuid4())

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=exc.headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort 500. The traceback goes to the log under debug_id; the client gets neither."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # No internal details leaked
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Subscription entitlements synced from Stripe webhooks",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "entitlements.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
