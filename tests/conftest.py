"""Pytest configuration and fixtures for the billing service tests."""

import os

# Settings are read at import time; configure before importing kentra
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("STRIPE_SECRET_KEY", "")

from datetime import timedelta
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from kentra.constants import LISTING_ACTIVE, TRIAL_PLAN_NAME
from kentra.db.session import get_db
from kentra.models import Base, Property, Subscription, SubscriptionPlan, User
from kentra.services.auth_service import create_jwt
from kentra.services.rate_limiter import RateLimiter, set_rate_limiter
from kentra.subscription_states import SubscriptionStatus
from kentra.utils import now_utc

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Async engine on a shared in-memory SQLite database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def rate_limiter():
    """Fresh in-memory limiter per test."""
    limiter = RateLimiter()
    set_rate_limiter(limiter)
    yield limiter
    set_rate_limiter(None)


@pytest.fixture
def notifier():
    """Stand-in for NotificationDispatcher that records dispatch calls."""
    mock = AsyncMock()
    mock.dispatch.return_value = True
    return mock


@pytest.fixture
async def plans(db_session: AsyncSession) -> dict[str, SubscriptionPlan]:
    trial = SubscriptionPlan(
        name=TRIAL_PLAN_NAME, display_name="Prueba gratuita", max_properties=5, is_trial=True
    )
    pro = SubscriptionPlan(
        name="agente_pro",
        display_name="Agente Pro",
        stripe_price_id_monthly="price_pro_monthly",
        stripe_price_id_yearly="price_pro_yearly",
        max_properties=50,
    )
    basic = SubscriptionPlan(
        name="agente_basico",
        display_name="Agente Básico",
        stripe_price_id_monthly="price_basic_monthly",
        max_properties=10,
    )
    db_session.add_all([trial, pro, basic])
    await db_session.commit()
    return {"trial": trial, "pro": pro, "basic": basic}


@pytest.fixture
def make_user(db_session: AsyncSession):
    counter = {"n": 0}

    async def _make(**kwargs) -> User:
        counter["n"] += 1
        n = counter["n"]
        kwargs.setdefault("email", f"agente{n}@example.com")
        kwargs.setdefault("full_name", f"Agente {n}")
        user = User(**kwargs)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_subscription(db_session: AsyncSession, plans):
    async def _make(user: User, plan: str = "pro", **kwargs) -> Subscription:
        kwargs.setdefault("status", SubscriptionStatus.ACTIVE)
        kwargs.setdefault("current_period_start", now_utc() - timedelta(days=10))
        kwargs.setdefault("current_period_end", now_utc() + timedelta(days=20))
        sub = Subscription(user_id=user.id, plan_id=plans[plan].id, **kwargs)
        db_session.add(sub)
        await db_session.commit()
        return sub

    return _make


@pytest.fixture
def make_listings(db_session: AsyncSession):
    async def _make(user: User, count: int, status: str = LISTING_ACTIVE) -> list[Property]:
        listings = [Property(agent_id=user.id, title=f"Casa {i}", status=status) for i in range(count)]
        db_session.add_all(listings)
        await db_session.commit()
        return listings

    return _make


@pytest.fixture
async def test_user(make_user) -> User:
    return await make_user(stripe_customer_id="cus_test123")


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_jwt(test_user.id)}"}


@pytest.fixture
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the database dependency overridden."""
    from kentra.app import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.arq_redis = None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def _stripe_subscription(
    sub_id: str = "sub_123",
    status: str = "active",
    cancel_at_period_end: bool = False,
    cancel_at: int | None = None,
    price_id: str = "price_pro_monthly",
    interval: str = "month",
    period_end_days: int = 20,
) -> dict:
    """Minimal Stripe subscription payload as a plain dict."""
    now = now_utc()
    return {
        "id": sub_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "current_period_start": int((now - timedelta(days=10)).timestamp()),
        "current_period_end": int((now + timedelta(days=period_end_days)).timestamp()),
        "items": {"data": [{"id": "si_1", "price": {"id": price_id, "recurring": {"interval": interval}}}]},
    }


@pytest.fixture
def stripe_sub():
    """Factory for Stripe subscription payloads."""
    return _stripe_subscription
