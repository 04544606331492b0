"""
Pytest configuration and shared fixtures for backend tests.
"""

import os
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, AsyncGenerator

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Settings are read at import time, so configure them first
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-that-is-long-enough-for-hs256")
os.environ.setdefault("LEMONSQUEEZY_API_KEY", "test_api_key_123")
os.environ.setdefault("LEMONSQUEEZY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_MONTHLY", "1001")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_YEARLY", "1002")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_DISCOUNTED_MONTHLY", "1003")
os.environ.setdefault("DOWNGRADE_SWEEPER_ENABLED", "false")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import after path and environment are set
from api.dependencies import get_billing_provider, token_service
from infrastructure.database.connection import get_db
from infrastructure.database.models import Base, Subscription, UserSettings
from services.event_normalizer import PlanVariants
from tests.support import (
    DISCOUNTED_VARIANT,
    MONTHLY_VARIANT,
    TEST_SUBSCRIPTION_ID,
    TEST_USER_EMAIL,
    TEST_USER_ID,
    YEARLY_VARIANT,
    FakeBillingProvider,
)

# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def plan_variants() -> PlanVariants:
    return PlanVariants(
        monthly=MONTHLY_VARIANT,
        yearly=YEARLY_VARIANT,
        discounted_monthly=DISCOUNTED_VARIANT,
    )


@pytest.fixture
def fake_provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def auth_headers() -> dict:
    """Authentication headers for the test user."""
    access_token = token_service.create_access_token(user_id=TEST_USER_ID, email=TEST_USER_EMAIL)
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
async def async_client(
    db_session: AsyncSession,
    fake_provider: FakeBillingProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    # Import app here so settings above are in place
    from main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_provider] = lambda: fake_provider

    # Reset rate limiter state between tests to prevent cross-test 429s
    app.state.limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_subscription(db_session: AsyncSession):
    """
    Factory for a stored subscription plus its settings projection.

    Defaults to an active, provider-linked monthly subscription for the
    test user.
    """

    async def _make(**overrides: Any) -> Subscription:
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "user_id": TEST_USER_ID,
            "user_email": TEST_USER_EMAIL,
            "lemonsqueezy_customer_id": "4455",
            "lemonsqueezy_subscription_id": TEST_SUBSCRIPTION_ID,
            "lemonsqueezy_variant_id": MONTHLY_VARIANT,
            "status": "active",
            "plan_type": "pro",
            "billing_interval": "month",
            "current_period_start": now - timedelta(days=5),
            "current_period_end": now + timedelta(days=25),
            "renews_at": now + timedelta(days=25),
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.add(
            UserSettings(
                user_id=values["user_id"],
                subscription_status=values["status"],
                subscription_plan=values["plan_type"],
                lemonsqueezy_customer_id=values["lemonsqueezy_customer_id"],
                lemonsqueezy_subscription_id=values["lemonsqueezy_subscription_id"],
            )
        )
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _make
