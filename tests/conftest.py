"""Global pytest fixtures for the marketplace.

This module provides shared fixtures for testing including:
- An application wired to an in-memory SQLite database
- An httpx client over the ASGI transport
- Signing peer clients with real keypairs
- Redis mocks for the Redis-backed paths
"""

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.client import MarketplaceClient
from marketplace.config import Settings
from marketplace.database import Database
from marketplace.main import create_app
from marketplace.seed import seed_defaults
from tests.factories import InstanceFactory

ADMIN_KEY = "test-admin-key"


# ===========================================
# APPLICATION FIXTURES
# ===========================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="",
        admin_key=ADMIN_KEY,
        rate_limit_backend="database",
        log_format="console",
    )


@pytest_asyncio.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    """Application over a fresh in-memory database with default channels seeded."""
    application = create_app(settings)
    database: Database = application.state.database
    await database.create_schema()
    async with database.session() as session:
        await seed_defaults(session)
    yield application
    await database.dispose()


@pytest_asyncio.fixture
async def db_session(app: FastAPI) -> AsyncGenerator[AsyncSession, None]:
    """A session on the application's database, for direct assertions."""
    async with app.state.database.session() as session:
        yield session


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"x-admin-key": ADMIN_KEY}


# ===========================================
# PEER INSTANCE FIXTURES
# ===========================================


@pytest_asyncio.fixture
async def instance_a(async_client: AsyncClient) -> MarketplaceClient:
    """A registered instance nicknamed Alpha."""
    peer = InstanceFactory.create_client(async_client)
    await peer.register(**InstanceFactory.profile("Alpha"))
    return peer


@pytest_asyncio.fixture
async def instance_b(async_client: AsyncClient) -> MarketplaceClient:
    """A registered instance nicknamed Bravo."""
    peer = InstanceFactory.create_client(async_client)
    await peer.register(**InstanceFactory.profile("Bravo"))
    return peer


# ===========================================
# REDIS MOCK FIXTURES
# ===========================================


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create a mock Redis client for unit tests."""
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.setex = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.zcount = AsyncMock(return_value=0)
    redis.pipeline = MagicMock(return_value=redis)
    redis.execute = AsyncMock(return_value=[])
    redis.aclose = AsyncMock()
    return redis
