"""
Shared fixtures: an in-memory SQLite store and a stubbed Finicity API.

Run with:
    pytest            (from the repository root)
"""
import os

# Settings are read at import time, so these must be set before importing app.*
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("DB_AUTO_CREATE", "false")
os.environ.setdefault("API_SECRET_KEY", "test-secret-key-that-is-long-enough-1234")
os.environ.setdefault("FINICITY_PARTNER_ID", "partner-1")
os.environ.setdefault("FINICITY_PARTNER_SECRET", "partner-secret")
os.environ.setdefault("FINICITY_APP_KEY", "app-key")
os.environ.setdefault("FINICITY_WEBHOOK_URL", "https://api.example.test/api/v1/finicity/webhook")
os.environ.setdefault("APP_URL", "https://app.example.test")

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models.account  # noqa: F401  (registers tables)
from app.core.database import Base
from app.models.user import User
from fakes import FakeFinicity


@pytest.fixture
def finicity() -> FakeFinicity:
    return FakeFinicity()


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db) -> User:
    u = User(email="creator@example.com", full_name="Casey Creator")
    db.add(u)
    await db.commit()
    return u


@pytest.fixture
async def connected_user(db) -> User:
    u = User(email="linked@example.com", full_name="Lee Linked", finicity_customer_id="5011")
    db.add(u)
    await db.commit()
    return u


@pytest.fixture
async def api_client(db, finicity):
    """HTTP client against the app with the store and Finicity stubbed out."""
    from app.core.database import get_db
    from app.core.deps import get_finicity_client, get_token_cache
    from app.main import app
    from app.services.finicity_auth import TokenCache

    async def _db():
        yield db

    cache = TokenCache()
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_finicity_client] = lambda: finicity.client()
    app.dependency_overrides[get_token_cache] = lambda: cache
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()

