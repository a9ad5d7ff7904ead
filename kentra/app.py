"""FastAPI application factory — entry point for the billing API."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from redis.exceptions import RedisError

from kentra.config import get_settings
from kentra.routers import billing, jobs, subscriptions, webhooks
from kentra.services.rate_limiter import RateLimitExceeded, rate_limit_response
from kentra.utils import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    from kentra.db.session import engine
    from kentra.models import Base

    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # Initialize third-party API keys once at startup
    if settings.stripe_secret_key:
        from kentra.services.billing_provider import init_stripe
        init_stripe()
    if settings.resend_api_key:
        import resend
        resend.api_key = settings.resend_api_key

    # Job queue for notifications; without Redis they are logged and dropped
    app.state.arq_redis = None
    try:
        from arq import create_pool
        from arq.connections import RedisSettings

        app.state.arq_redis = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    except (OSError, RedisError) as e:
        logger.warning("ARQ pool unavailable, notifications will not be queued: %s", e)

    yield

    if app.state.arq_redis is not None:
        await app.state.arq_redis.aclose()
    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.debug)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    # --- Error handlers ---
    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return rate_limit_response(exc)

    # --- Routers ---
    app.include_router(subscriptions.router)
    app.include_router(billing.router)
    app.include_router(webhooks.router)
    app.include_router(jobs.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
