"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A worker-side session factory sharing the same database
- An in-memory Redis replacement
- Signed webhook requests for both providers
"""
# Secrets must be in the environment before app.main builds the webhook runtime
import os

from tests.helpers import (
    ADMIN_KEY,
    FINIX_SECRET,
    STREAM_KEY,
    STREAM_SECRET,
    encode,
    sign_finix,
    sign_getstream,
)

os.environ["FINIX_WEBHOOK_SECRET"] = FINIX_SECRET
os.environ["GETSTREAM_API_KEY"] = STREAM_KEY
os.environ["GETSTREAM_API_SECRET"] = STREAM_SECRET
os.environ["ADMIN_API_KEY"] = ADMIN_KEY

from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base, get_db
from app.db.models.listing import Listing, ListingStatus
from app.db.models.order import Order, OrderStatus
from app.main import app
from app.webhooks.runtime import build_webhook_runtime
from app.workers.pool import WorkerPool
from app.workers.queue import QueueOptions


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Factory for worker-side sessions (one per job, like production)"""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Webhook pipeline
# ============================================================================

@pytest.fixture
def queue_options() -> QueueOptions:
    """Production defaults, but retries are due immediately"""
    return QueueOptions(backoff_base_seconds=0)


@pytest.fixture
def mock_chat_client() -> AsyncMock:
    client = AsyncMock()
    client.send_system_message = AsyncMock(return_value={"message": {"id": "sys-1"}})
    return client


@pytest.fixture
def webhook_runtime(mock_chat_client):
    """Runtime wired like production, with the chat client mocked out"""
    return build_webhook_runtime(settings, services={"chat_client": mock_chat_client})


@pytest.fixture
def worker_pool(session_factory, webhook_runtime, queue_options) -> WorkerPool:
    """
    Single-slot pool: the in-memory database is one shared connection, so
    jobs must not overlap.
    """
    return WorkerPool(
        session_factory,
        webhook_runtime.dispatcher,
        queue_options,
        concurrency=1,
        batch_size=20,
    )


@pytest.fixture
def drain_queue(worker_pool):
    """Run batches until no job is due; returns the batch results"""
    async def _drain(max_batches: int = 50):
        results = []
        for _ in range(max_batches):
            result = await worker_pool.run_batch()
            if result.claimed == 0:
                break
            results.append(result)
        return results

    return _drain


@pytest.fixture
def post_finix(test_client):
    async def _post(payload: dict[str, Any]):
        body = encode(payload)
        return await test_client.post("/webhooks/finix", content=body, headers=sign_finix(body))

    return _post


@pytest.fixture
def post_getstream(test_client):
    async def _post(payload: dict[str, Any], webhook_id: str | None = None):
        body = encode(payload)
        return await test_client.post(
            "/webhooks/getstream", content=body, headers=sign_getstream(body, webhook_id)
        )

    return _post


@pytest.fixture
def fetch(session_factory):
    """Fresh read in a new session, so assertions never see stale identity-map state"""
    async def _fetch(model, **filters):
        async with session_factory() as session:
            result = await session.execute(select(model).filter_by(**filters))
            return result.scalars().all()

    return _fetch


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating orders with their listing"""
    async def _create_order(
        *,
        status: OrderStatus = OrderStatus.PENDING,
        finix_transfer_id: str | None = None,
        finix_authorization_id: str | None = None,
        finix_payment_instrument_id: str | None = None,
        chat_channel_id: str | None = None,
        listing_status: ListingStatus = ListingStatus.RESERVED,
    ) -> Order:
        listing = Listing(title="Rolex Submariner", status=listing_status, reserved_by="buyer-1")
        db_session.add(listing)
        await db_session.flush()
        order = Order(
            listing_id=listing.id,
            buyer_id="buyer-1",
            seller_id="seller-1",
            amount=Decimal("12500.00"),
            status=status,
            finix_transfer_id=finix_transfer_id,
            finix_authorization_id=finix_authorization_id,
            finix_payment_instrument_id=finix_payment_instrument_id,
            chat_channel_id=chat_channel_id,
        )
        db_session.add(order)
        await db_session.commit()
        return order

    return _create_order


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory Redis replacement: strings and lists, no expiry."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._lists.pop(key, None)

    async def rpush(self, key: str, *values: str) -> int:
        self._lists.setdefault(key, []).extend(values)
        return len(self._lists[key])

    async def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lpop(self, key: str) -> str | None:
        items = self._lists.get(key)
        if not items:
            return None
        return items.pop(0)

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def aclose(self) -> None:
        self._store.clear()
        self._lists.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis in every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
