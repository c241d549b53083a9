"""Shared test configuration and fixtures.

Uses a transactional rollback strategy per test for full isolation:
- Each test runs inside an outer transaction that rolls back after the test.
- The session joins it through SAVEPOINTs, so code under test may commit.

Runs against in-memory SQLite by default. Set ``TEST_DATABASE_URL`` to a
``postgresql+asyncpg://`` URL (database must exist) to run against Postgres.
"""

import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.subscription import Subscription
from app.models.user import User

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

MONTHLY_PRICE_ID = "price_test_monthly"
YEARLY_PRICE_ID = "price_test_yearly"
WEBHOOK_SECRET = "whsec_test_secret"


def _make_engine():
    if not TEST_DATABASE_URL.startswith("sqlite"):
        return create_async_engine(TEST_DATABASE_URL, echo=False, pool_pre_ping=True)

    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over.
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# ---------------------------------------------------------------------------
# Session-scoped: create / drop all tables once per test session
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def test_engine():
    """Create a session-scoped engine tied to the session event loop."""
    engine = _make_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def setup_test_db(test_engine):
    """Create all tables at the start of the session and drop them at the end."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Stripe configuration: dummy keys, never a real account
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def stripe_settings(monkeypatch):
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_dummy")
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "stripe_monthly_price_id", MONTHLY_PRICE_ID)
    monkeypatch.setattr(settings, "stripe_yearly_price_id", YEARLY_PRICE_ID)
    monkeypatch.setattr(settings, "notification_webhook_url", "")


# ---------------------------------------------------------------------------
# Per-test: transactional rollback for isolation
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_session(test_engine, setup_test_db) -> AsyncGenerator[AsyncSession, None]:
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
# Convenience fixtures: users and subscriptions
# ---------------------------------------------------------------------------


def _auth_headers_for(user: User) -> dict[str, str]:
    token = create_access_token(str(user.id), email=user.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    """Return a function building Authorization headers for any user."""
    return _auth_headers_for


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Factory fixture: create and flush a user with a unique email."""

    async def _make_user(email: str | None = None, is_active: bool = True) -> User:
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            name="Test User",
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _make_user


@pytest.fixture
def make_subscription(db_session: AsyncSession):
    """Factory fixture: create and flush a subscription row for a user."""

    async def _make_subscription(
        user: User,
        status: str = "active",
        plan_type: str = "monthly",
        stripe_customer_id: str | None = "cus_test_123",
        stripe_subscription_id: str | None = None,
        **fields,
    ) -> Subscription:
        subscription = Subscription(
            user_id=user.id,
            plan_type=plan_type,
            status=status,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id or f"sub_{uuid.uuid4().hex[:12]}",
            **fields,
        )
        db_session.add(subscription)
        await db_session.flush()
        return subscription

    return _make_subscription


@pytest_asyncio.fixture
async def test_user(make_user) -> User:
    """A user with no subscription yet."""
    return await make_user()


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return _auth_headers_for(test_user)
