"""
Pytest configuration and shared fixtures for the fulfillment tests.

Provides a file-backed SQLite database per test (fulfillment opens its own
sessions, so the test session and the service must see the same file),
catalog fixtures and an httpx client for the app.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from main import app
from database import Base, get_db, get_session_factory
from config import settings
from middleware.rate_limit import limiter

import db_models  # noqa: F401  (registers tables on Base.metadata)
from db_models import Beat, Order, Soundpack, User
from services import order_service
from tests.fakes import TEST_CRON_SECRET, TEST_PAYSTACK_SECRET, backdate


# ── Test Configuration ───────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Known secrets, fast polling, and a clean rate limiter for every test."""
    monkeypatch.setattr(settings, "paystack_secret_key", TEST_PAYSTACK_SECRET)
    monkeypatch.setattr(settings, "cron_secret", TEST_CRON_SECRET)
    monkeypatch.setattr(settings, "environment", "development")
    monkeypatch.setattr(settings, "solana_poll_attempts", 2)
    monkeypatch.setattr(settings, "solana_poll_interval_seconds", 0.0)
    monkeypatch.setattr(settings, "sweep_poll_attempts", 1)
    limiter.reset()
    yield
    limiter.reset()


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """
    File-backed SQLite engine for each test.

    The busy timeout lets concurrent fulfillment transactions queue on the
    database write lock instead of failing immediately.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx client against the app with the test database wired in.

    ASGITransport does not run the lifespan, so the background sweep never starts.
    """
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


# ── Catalog Fixtures ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def buyer(db_session: AsyncSession) -> User:
    user = User(email="buyer@example.com", username="buyer", role="buyer")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def producer(db_session: AsyncSession) -> User:
    user = User(email="producer@example.com", username="producer", role="producer")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def beats(db_session: AsyncSession, producer: User) -> list[Beat]:
    rows = [Beat(producer_id=producer.id, title=f"Beat {i}") for i in range(1, 4)]
    db_session.add_all(rows)
    await db_session.commit()
    for row in rows:
        await db_session.refresh(row)
    return rows


@pytest_asyncio.fixture
async def soundpack(db_session: AsyncSession, producer: User) -> Soundpack:
    pack = Soundpack(producer_id=producer.id, title="Drum Kit Vol. 1")
    db_session.add(pack)
    await db_session.commit()
    await db_session.refresh(pack)
    return pack


@pytest.fixture
def make_order(db_session: AsyncSession, buyer: User, beats: list[Beat]):
    """
    Factory for committed orders.

    Defaults to a single-beat NGN card order priced at 10,000.
    """
    async def _make(
        *,
        items: list[dict] | None = None,
        payment_method: str = "card_split",
        currency_code: str = "NGN",
        buyer_id: int | None = None,
        reference: str | None = None,
        signature: str | None = None,
        age_seconds: int | None = None,
    ) -> Order:
        if items is None:
            items = [{"item_type": "beat", "item_id": beats[0].id, "price_charged": 10000.0}]
        order = await order_service.create_order(
            db_session,
            buyer_id=buyer_id or buyer.id,
            items=items,
            currency_code=currency_code,
            payment_method=payment_method,
        )
        await db_session.commit()
        order = await order_service.require_order(db_session, order.id)
        if reference or signature:
            order = await order_service.record_payment_attempt(
                db_session, order_id=order.id, reference=reference, signature=signature
            )
        if age_seconds is not None:
            await backdate(db_session, order.id, age_seconds)
        return order

    return _make


