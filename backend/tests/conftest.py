"""
Centralized Test Configuration.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, get_session_factory, Base
from backend.app.core.redis_client import get_redis
from backend.app.core.reliability import ingestion_circuit_breaker
from backend.app.models.user import User
from backend.app.services import permissions, sessions
from backend.app.services.permissions import ALL_PERMISSIONS
import backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}
            self.ttls = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session.
    Global override is safer here than per-test override to avoid app state flux.
    """
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    def override_get_session_factory():
        return TestingSessionLocal

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    app.dependency_overrides[get_redis] = override_get_redis
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()
    ingestion_circuit_breaker.reset_state()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # the pooled connection is bound to this test's event loop
    await engine.dispose()


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def now():
    """A fixed naive-UTC instant for service-level tests."""
    return datetime(2024, 3, 15, 12, 0, 0)


@pytest.fixture
async def admin_user(db_session):
    """Admin holding every permission, unscoped."""
    admin = User(email="admin@test.com", display_name="Admin", is_active=True)
    db_session.add(admin)
    await db_session.commit()

    for permission in ALL_PERMISSIONS:
        await permissions.grant(db_session, user_id=admin.id, permission=permission, granted_by=admin.id)
    return admin


@pytest.fixture
async def admin_token(db_session, admin_user):
    """Bearer token of a live session for admin_user."""
    session = await sessions.issue(db_session, user_id=admin_user.id, origin_ip="10.0.0.1", user_agent="pytest")
    return session.token


@pytest.fixture
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
async def regular_user(db_session):
    user = User(email="seller@test.com", display_name="Seller", is_active=True)
    db_session.add(user)
    await db_session.commit()
    return user
