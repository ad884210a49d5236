"""FastAPI wiring for the resolver and the mutation gateway.

Host applications authenticate requests themselves and either store the
principal on ``request.state.principal`` or override
``get_current_principal``.
"""
from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .crud.store import GrantStore
from .database import get_session
from .domain.ports.cache import CacheBackend
from .domain.ports.principal import Principal
from .infrastructure import build_cache_backend
from .services.cache import PermissionCache
from .services.gateway import MutationGateway
from .services.resolver import PermissionResolver

_cache_backend: CacheBackend | None = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


def get_app_settings() -> Settings:
    return get_settings()


def get_cache_backend(settings: Settings = Depends(get_app_settings)) -> CacheBackend:
    # One backend per process
    global _cache_backend
    if _cache_backend is None:
        _cache_backend = build_cache_backend(settings)
    return _cache_backend


def get_permission_cache(
    backend: CacheBackend = Depends(get_cache_backend),
    settings: Settings = Depends(get_app_settings),
) -> PermissionCache:
    return PermissionCache(backend, settings.cache)


def get_grant_store(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> GrantStore:
    return GrantStore(db, settings)


def get_resolver(
    store: GrantStore = Depends(get_grant_store),
    cache: PermissionCache = Depends(get_permission_cache),
    settings: Settings = Depends(get_app_settings),
) -> PermissionResolver:
    return PermissionResolver(store, cache, settings)


def get_gateway(
    store: GrantStore = Depends(get_grant_store),
    cache: PermissionCache = Depends(get_permission_cache),
    settings: Settings = Depends(get_app_settings),
) -> MutationGateway:
    return MutationGateway(store, cache, settings)


def get_current_principal(request: Request) -> Principal | None:
    return getattr(request.state, "principal", None)
