"""Shared test configuration and fixtures.

Uses a transactional rollback strategy per test for full isolation:
- Each test gets a fresh in-memory SQLite database (aiosqlite).
- The session joins an outer transaction; service-level commits only release
  SAVEPOINTs, and everything is rolled back after the test.
"""

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.billing.plans import get_plan
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.payment_method import PaymentMethod
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from app.models.user import User

TEST_DATABASE_URL = "sqlite+aiosqlite://"

# Fixed clock for service-level tests
NOW = datetime(2026, 3, 15, 9, 0, 0)

WEBHOOK_SECRET = "whsec_dGVzdC13ZWJob29rLXNlY3JldC1rZXk="
CRON_SECRET = "test-cron-secret"


def _make_engine() -> AsyncEngine:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's implicit transactions break SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# ---------------------------------------------------------------------------
# Per-test: fresh schema + transactional rollback for isolation
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session wrapped in a transaction that always rolls back."""
    async with test_engine.connect() as connection:
        transaction = await connection.begin()
        session = AsyncSession(
            bind=connection,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )

        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def webhook_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(settings, "portone_webhook_secret", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.fixture
def cron_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(settings, "cron_secret", CRON_SECRET)
    monkeypatch.setattr(settings, "cron_trust_platform_header", False)
    return CRON_SECRET


# ---------------------------------------------------------------------------
# Convenience fixtures: users, subscriptions, billing keys
# ---------------------------------------------------------------------------


async def create_user(db_session: AsyncSession, name: str = "Test User") -> User:
    """Create a user directly in the DB."""
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"testuser-{unique}@test.com",
        name=name,
        is_active=True,
        role="member",
    )
    db_session.add(user)
    await db_session.flush()
    return user


def headers_for(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and return a test user with no subscription row yet."""
    return await create_user(db_session)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return headers_for(test_user)


SubscriptionFactory = Callable[..., Awaitable[Subscription]]


@pytest_asyncio.fixture
async def make_subscription(db_session: AsyncSession) -> SubscriptionFactory:
    """Factory for subscription rows in an arbitrary state.

    Paid tiers default to a period that started 30 days before ``end_date``.
    Pass ``billing_key=True`` to attach an active billing key with auto-renewal.
    """

    async def _make(
        user: User,
        tier: SubscriptionTier = SubscriptionTier.PRO,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        end_date: datetime | None = None,
        billing_key: bool = False,
        **fields,
    ) -> Subscription:
        subscription = Subscription(
            user_id=user.id,
            tier=SubscriptionTier(tier).value,
            status=SubscriptionStatus(status).value,
            auto_renewal=False,
            failed_payment_count=0,
            credits_granted_for_period=tier != SubscriptionTier.FREE,
        )
        if tier != SubscriptionTier.FREE:
            subscription.end_date = end_date or NOW + timedelta(days=10)
            subscription.start_date = subscription.end_date - timedelta(days=30)
        if billing_key:
            payment_method = PaymentMethod(
                user_id=user.id,
                billing_key=f"billing-key-{uuid.uuid4().hex[:12]}",
                is_active=True,
                card_issuer="Test Card",
                masked_number="1234-****-****-5678",
                card_type="CREDIT",
            )
            db_session.add(payment_method)
            await db_session.flush()
            subscription.billing_key = payment_method
            subscription.auto_renewal = True
            subscription.next_billing_date = subscription.end_date
        for key, value in fields.items():
            setattr(subscription, key, value)
        db_session.add(subscription)
        await db_session.flush()
        return subscription

    return _make


@pytest.fixture
def pro_price() -> int:
    return get_plan(SubscriptionTier.PRO).price_monthly
