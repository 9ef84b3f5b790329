"""
Pytest configuration and fixtures for testing
"""
import os
import time

# Settings are read at import time, so the test environment goes in first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_STANDARD_PRICE_ID"] = "price_standard_test"
os.environ["STRIPE_PREMIUM_PRICE_ID"] = "price_premium_test"
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ.pop("REDIS_URL", None)
os.environ.pop("ENV", None)
os.environ.pop("RENDER", None)

from datetime import timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from auth_utils import create_jwt, hash_password
from database import Base, get_db
from database_models import Subscription, User
from models.subscription import PaymentPlatform, SubscriptionStatus, SubscriptionTier
from models.user import UserRole
from utils.shared_utils import utcnow

# In-memory SQLite shared by every session through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    future=True,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def override_get_db():
    """Override get_db to use test database"""
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
async def tables():
    """Create all tables for one test and drop them afterwards"""
    import database_models  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def test_db(tables):
    """
    Fixture that provides an isolated, in-memory SQLite database session for each test.
    """
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


class FakePaymentService:
    """Stands in for the Stripe gateway; records calls and returns canned objects"""

    def __init__(self):
        self.created = []
        self.cancelled = []
        self.webhook_secret = os.environ["STRIPE_WEBHOOK_SECRET"]

    async def create_subscription(self, user_id, email, price_id, name=None, payment_method_id=None):
        self.created.append({"user_id": user_id, "email": email, "price_id": price_id})
        start = int(time.time()) - 60
        end = int(time.time()) + 30 * 86400
        return {
            "id": f"sub_test_{len(self.created)}",
            "status": "active",
            "current_period_start": start,
            "current_period_end": end,
            "latest_invoice": {"payment_intent": {"client_secret": "pi_secret_test"}},
        }

    async def cancel_subscription(self, external_subscription_id):
        self.cancelled.append(external_subscription_id)
        return {"id": external_subscription_id, "cancel_at_period_end": True}

    def construct_event(self, payload, signature):
        from services.payment_service import PaymentService
        return PaymentService(webhook_secret=self.webhook_secret).construct_event(payload, signature)


@pytest.fixture
def payment_service():
    return FakePaymentService()


@pytest.fixture
async def client(tables, payment_service):
    """
    Async HTTP client over the ASGI app with the test database and a fake
    payment gateway wired in.
    """
    from main import app
    from services.payment_service import get_payment_service

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_service] = lambda: payment_service

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


async def create_user(
    db: AsyncSession,
    email: str = "viewer@example.com",
    role: UserRole = UserRole.USER,
    tier: SubscriptionTier = SubscriptionTier.FREE,
) -> User:
    user = User(
        email=email,
        hashed_password=hash_password("Str0ng!Password"),
        role=role,
        subscription_tier=tier,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)
    return user


async def create_subscription_row(
    db: AsyncSession,
    user: User,
    tier: SubscriptionTier = SubscriptionTier.PREMIUM,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    period_end_delta: timedelta = timedelta(days=10),
    external_id: str = "sub_external_1",
    platform: PaymentPlatform = PaymentPlatform.STRIPE,
) -> Subscription:
    now = utcnow()
    subscription = Subscription(
        user_id=user.id,
        plan_id="premium_monthly" if tier == SubscriptionTier.PREMIUM else "standard_monthly",
        status=status,
        tier=tier,
        platform=platform,
        external_subscription_id=external_id,
        current_period_start=now - timedelta(days=20),
        current_period_end=now + period_end_delta,
    )
    db.add(subscription)
    await db.flush()
    await db.refresh(subscription)
    return subscription


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_jwt(str(user.id))}"}


@pytest.fixture
async def seeded_user(tables):
    """A committed FREE user, usable from API tests"""
    async with TestAsyncSessionLocal() as session:
        user = await create_user(session)
        await session.commit()
    return user
