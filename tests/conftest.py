"""
Pytest configuration and fixtures.

Tests run against SQLite (aiosqlite) with Stripe and Redis mocked.
"""
import os
import time
from typing import Any, AsyncGenerator, Callable, Dict
from unittest.mock import AsyncMock

# Settings are cached on first use; point them at test values before any import
os.environ.update(
    {
        "APP_ENV": "test",
        "DATABASE_URL": "sqlite+aiosqlite://",
        "STRIPE_SECRET_KEY": "sk_test_fake_key_for_testing",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_fake_secret",
        "JWT_SECRET_KEY": "test-jwt-secret-key-with-at-least-32-bytes",
        "REJECT_INVALID_TOKENS": "false",
        "PUBLIC_BASE_URL": "https://otw.test",
    }
)

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from otw_orders.config import Settings, get_settings
from otw_orders.core.identity import IdentityResolver
from otw_orders.core.order_service import OrderService
from otw_orders.database.connection import create_session_factory
from otw_orders.database.models import Base
from otw_orders.database.order_store import OrderStore
from otw_orders.integrations.stripe_gateway import CheckoutSession

from tests.factories import open_session

get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    return get_settings()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> OrderStore:
    return OrderStore(session_factory=session_factory)


@pytest.fixture
def order_service(store: OrderStore, test_settings: Settings) -> OrderService:
    return OrderService(store, test_settings)


@pytest.fixture
def gateway() -> AsyncMock:
    """Stripe gateway double; sessions are issued as cs_test_1, cs_test_2, ..."""
    mock_gateway = AsyncMock()
    counter = {"n": 0}

    async def create_checkout_session(**kwargs: Any) -> CheckoutSession:
        counter["n"] += 1
        session_id = f"cs_test_{counter['n']}"
        return CheckoutSession(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    mock_gateway.create_checkout_session = AsyncMock(side_effect=create_checkout_session)
    mock_gateway.retrieve_session = AsyncMock(
        side_effect=lambda session_id: open_session(session_id)
    )
    return mock_gateway


@pytest.fixture
def make_token(test_settings: Settings) -> Callable[..., str]:
    """Sign a bearer token with the test secret."""

    def _make(subject: str = "user-123", expires_in: int = 3600, **claims: Any) -> str:
        payload: Dict[str, Any] = {"sub": subject, "exp": int(time.time()) + expires_in}
        payload.update(claims)
        return jwt.encode(payload, test_settings.jwt_secret_key, algorithm="HS256")

    return _make


@pytest.fixture
def sample_service_details() -> Dict[str, Any]:
    return {
        "type": "grocery",
        "title": "Weekly groceries",
        "description": "Pickup from Kroger on Main St",
        "estimatedPrice": 25.99,
        "serviceDetails": {
            "selectedStore": "Kroger",
            "deliveryTime": "asap",
            "groceryList": ["milk", "eggs"],
        },
    }


@pytest.fixture
def sample_customer_info() -> Dict[str, Any]:
    return {
        "name": "Jane Doe",
        "phone": "555-0100",
        "email": "jane@example.com",
        "address": "1 Main St, Springfield",
        "specialInstructions": "Ring twice",
    }


@pytest_asyncio.fixture
async def client(
    store: OrderStore, gateway: AsyncMock, test_settings: Settings
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client over the app with store, gateway and Redis swapped for test doubles."""
    from otw_orders.api import dependencies
    from otw_orders.api.main import app

    redis_client = AsyncMock()
    redis_client.exists.return_value = 0

    # Process-wide clients built against earlier overrides must not leak in
    dependencies._clients.clear()
    app.dependency_overrides[dependencies.get_order_store] = lambda: store
    app.dependency_overrides[dependencies.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.get_redis_client] = lambda: redis_client
    app.dependency_overrides[dependencies.get_identity_resolver] = (
        lambda: IdentityResolver.from_settings(test_settings)
    )

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    dependencies._clients.clear()
