"""Shared test fixtures and configuration."""
import os

# Keep accidental get_settings() calls away from a developer's real Redis
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rolegate.config import Settings
from rolegate.crud.store import GrantStore
from rolegate.database import create_schema
from rolegate.infrastructure.memory import MemoryCacheBackend
from rolegate.services.cache import PermissionCache
from rolegate.services.gateway import MutationGateway
from rolegate.services.resolver import PermissionResolver


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class PermissionEnv:
    settings: Settings
    session: AsyncSession
    store: GrantStore
    backend: MemoryCacheBackend
    cache: PermissionCache
    resolver: PermissionResolver
    gateway: MutationGateway
    clock: FrozenClock


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def make_env(session, clock):
    """Build resolver, gateway and cache over one session for the given settings."""

    def factory(settings: Settings | None = None, backend: MemoryCacheBackend | None = None) -> PermissionEnv:
        settings = settings or Settings()
        if backend is None:
            backend = MemoryCacheBackend()
        store = GrantStore(session, settings)
        cache = PermissionCache(backend, settings.cache)
        return PermissionEnv(
            settings=settings,
            session=session,
            store=store,
            backend=backend,
            cache=cache,
            resolver=PermissionResolver(store, cache, settings, clock=clock),
            gateway=MutationGateway(store, cache, settings, clock=clock),
            clock=clock,
        )

    return factory


@pytest.fixture
def env(make_env) -> PermissionEnv:
    return make_env()
