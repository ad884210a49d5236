"""Namespaced read-through cache for resolved role and permission sets.

Every value here is derived from the grant store and can be dropped at any
time. Backend failures are logged and treated as misses so that resolution
always falls back to the store.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from ..config import CacheSettings
from ..domain.ports.cache import CacheBackend
from ..domain.ports.principal import PrincipalKey
from ..errors import CacheBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PermissionCache:
    tags: tuple[str, ...] = ("permissions",)

    def __init__(self, backend: CacheBackend, settings: CacheSettings | None = None):
        self.backend = backend
        self.settings = settings or CacheSettings()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    @property
    def role_cache_enabled(self) -> bool:
        return self.enabled and self.settings.cache_roles

    @property
    def permission_cache_enabled(self) -> bool:
        return self.enabled and self.settings.cache_permissions

    @property
    def uses_tags(self) -> bool:
        return self.settings.use_tags and self.backend.supports_tags

    @property
    def prefix(self) -> str:
        return self.settings.key_prefix

    def cache_key(self, key: str) -> str:
        return f"{self.prefix}.{key}"

    def _ttl(self, ttl: int | None) -> int:
        return ttl if ttl is not None else self.settings.expiration_time

    async def get(self, key: str, default: Any = None) -> Any:
        if not self.enabled:
            return default
        full_key = self.cache_key(key)
        try:
            raw = await self.backend.get(full_key)
        except CacheBackendError as exc:
            logger.warning("Permission cache read failed key=%s error=%s", full_key, exc)
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry key=%s", full_key)
            return default

    async def put(self, key: str, value: Any, ttl: int | None = None) -> bool:
        if not self.enabled:
            return False
        full_key = self.cache_key(key)
        try:
            await self.backend.set(
                full_key,
                json.dumps(value),
                self._ttl(ttl),
                self.tags if self.uses_tags else (),
            )
        except CacheBackendError as exc:
            logger.warning("Permission cache write failed key=%s error=%s", full_key, exc)
            return False
        return True

    async def remember(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: int | None = None,
    ) -> T:
        """Return the cached value for ``key`` or compute, store and return it.

        With caching disabled ``compute`` runs every time and nothing is
        stored.
        """
        if not self.enabled:
            return await compute()

        missing = object()
        cached = await self.get(key, missing)
        if cached is not missing:
            logger.debug("Permission cache hit key=%s", key)
            return cached

        value = await compute()
        await self.put(key, value, ttl)
        return value

    async def _evict(self, key: str) -> bool:
        # Unlike forget(), backend failures propagate
        if not self.enabled:
            return False
        return await self.backend.delete(self.cache_key(key))

    async def forget(self, key: str) -> bool:
        try:
            return await self._evict(key)
        except CacheBackendError as exc:
            logger.warning("Permission cache forget failed key=%s error=%s", self.cache_key(key), exc)
            return False

    async def flush(self) -> bool:
        """Evict every entry of this cache.

        Only the ``permissions`` tag group is evicted when tags are usable.
        Otherwise the configured fallback applies: ``store`` clears the whole
        backend (including unrelated data sharing it), ``prefix`` deletes
        keys under this cache's prefix only.
        """
        if not self.enabled:
            return False
        try:
            if self.uses_tags:
                await self.backend.flush_tags(self.tags)
            elif self.settings.flush_fallback == "prefix":
                deleted = await self.backend.delete_prefix(f"{self.prefix}.")
                logger.info("Permission cache flushed by prefix prefix=%s deleted=%d", self.prefix, deleted)
            else:
                logger.info("Cache tags unavailable, clearing entire cache store")
                await self.backend.clear()
        except CacheBackendError as exc:
            logger.warning("Permission cache flush failed error=%s", exc)
            return False
        return True

    # Key builders

    def user_roles_key(self, principal: PrincipalKey) -> str:
        return f"user_roles_{principal.cache_id}"

    def user_permissions_key(self, principal: PrincipalKey) -> str:
        return f"user_permissions_{principal.cache_id}"

    def user_permission_ids_key(self, principal: PrincipalKey) -> str:
        return f"{self.user_permissions_key(principal)}_ids"

    def role_permissions_key(self, role_id: int) -> str:
        return f"role_permissions_{role_id}"

    # Invalidation helpers. These raise CacheBackendError instead of failing
    # open, so a caller can fall back to flush().

    async def clear_user_cache(self, principal: PrincipalKey) -> bool:
        results = [
            await self._evict(self.user_roles_key(principal)),
            await self._evict(self.user_permissions_key(principal)),
            await self._evict(self.user_permission_ids_key(principal)),
        ]
        return any(results)

    async def clear_role_cache(self, role_id: int) -> bool:
        return await self._evict(self.role_permissions_key(role_id))

    async def clear_affected_users_caches(
        self, role_id: int, holders: Iterable[PrincipalKey]
    ) -> int:
        """Forget the cached sets of every holder of a role, then the role's own entry.

        Returns the number of principals whose entries were cleared.

        Raises:
            CacheBackendError: On the first entry the backend failed to delete
        """
        if not self.enabled:
            return 0
        cleared = 0
        for principal in holders:
            await self.clear_user_cache(principal)
            cleared += 1
        await self.clear_role_cache(role_id)
        return cleared
