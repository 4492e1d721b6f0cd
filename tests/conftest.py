"""Shared pytest fixtures for store, cache, resolver and API tests."""

import os

# Ensure test environment before any shortlink module reads settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./shortlink-test.db")
os.environ.setdefault("DEFAULT_DOMAIN", "test")
os.environ.setdefault("BASE_URL", "http://test")

import datetime
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.cache import LinkCache
from shortlink.config import Settings
from shortlink.database import Base, build_engine
from shortlink.dependencies import ServiceManager, _service_manager
from shortlink.main import app
from shortlink.models import User
from shortlink.security import generate_apikey
from shortlink.store import LinkStore

ADMIN_EMAIL = "admin@example.com"


class FakeClock:
    """Settable clock; starts at a fixed instant and only moves when told."""

    def __init__(self, now: datetime.datetime | None = None):
        self.now = now or datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        DEFAULT_DOMAIN="test",
        BASE_URL="http://test",
        ADMIN_EMAILS=ADMIN_EMAIL,
        NON_USER_COOLDOWN=10,
        USER_LIMIT_PER_DAY=50,
        MAX_STATS_KEYS_PER_LINK=100,
        RECAPTCHA_SECRET_KEY="",
        GEOIP_SERVICE_URL="",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shortlink.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> LinkStore:
    return LinkStore(session_factory)


@pytest_asyncio.fixture(scope="function")
async def redis_client() -> AsyncGenerator[FakeAsyncRedis, None]:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def cache(redis_client: FakeAsyncRedis) -> LinkCache:
    return LinkCache(redis_client, ttl_seconds=300)


@pytest_asyncio.fixture(scope="function")
async def manager(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: FakeAsyncRedis,
) -> AsyncGenerator[ServiceManager, None]:
    await _service_manager.initialize(
        settings=settings,
        session_factory=session_factory,
        cache_writer=redis_client,
    )
    yield _service_manager
    await _service_manager.cleanup()


@pytest_asyncio.fixture(scope="function")
async def client(manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture(scope="function")
async def user(store: LinkStore) -> User:
    return await store.insert_user("user@example.com", apikey=generate_apikey())


@pytest_asyncio.fixture(scope="function")
async def admin(store: LinkStore) -> User:
    return await store.insert_user(ADMIN_EMAIL, apikey=generate_apikey())
