"""Read side of the permission system.

The resolver answers role and permission questions for a principal from
cached derived sets, falling back to the grant store on a miss. Cached sets
keep the expiry of every entry (``slug -> ISO timestamp or None``) so that a
cached answer never outlives the grant it came from; filtering against the
clock happens on every read.
"""
from __future__ import annotations

import logging
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Hashable, Iterable

from ..clock import Clock, is_active, utcnow
from ..config import Settings
from ..crud.grant import PRINCIPAL_PERMISSIONS, PRINCIPAL_ROLES, Relation
from ..crud.store import GrantStore
from ..domain.ports.principal import Principal, PrincipalKey, as_principal
from ..models.permission import Permission
from ..models.role import Role
from .cache import PermissionCache
from .identifiers import Identifiers, PermissionLike, RoleLike

logger = logging.getLogger(__name__)

PrincipalLike = Principal | PrincipalKey | str | int
ExpiryMap = dict[str, str | None]


def merge_expiries(pairs: Iterable[tuple[Hashable, datetime | None]]) -> ExpiryMap:
    """Collapse ``(key, expires_at)`` pairs, keeping the latest expiry per key.

    ``None`` (never expires) beats any timestamp.
    """
    merged: dict[Hashable, datetime | None] = {}
    for key, expires_at in pairs:
        if key not in merged:
            merged[key] = expires_at
            continue
        current = merged[key]
        if current is None or expires_at is None:
            merged[key] = None
        else:
            merged[key] = max(current, expires_at)
    return {
        str(key): (expires_at.isoformat() if expires_at is not None else None)
        for key, expires_at in merged.items()
    }


def active_keys(mapping: ExpiryMap, now: datetime) -> set[str]:
    return {
        key
        for key, expires_at in mapping.items()
        if expires_at is None or is_active(datetime.fromisoformat(expires_at), now)
    }


def _is_many(value: object) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, Role, Permission))


class PermissionResolver:
    """Answers has-role / has-permission questions for principals."""

    def __init__(
        self,
        store: GrantStore,
        cache: PermissionCache,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self.identifiers = Identifiers(store)

    def _principal(self, principal: PrincipalLike) -> PrincipalKey:
        return as_principal(principal, self.settings.default_principal_type)

    # Derived sets

    async def _compute_role_map(self, principal: PrincipalKey, now: datetime) -> ExpiryMap:
        grants = await self._active_role_grants(principal, now)
        return merge_expiries((role.slug, expires_at) for role, expires_at in grants)

    async def _role_map(self, principal: PrincipalKey, now: datetime) -> ExpiryMap:
        if self.cache.role_cache_enabled:
            return await self.cache.remember(
                self.cache.user_roles_key(principal),
                lambda: self._compute_role_map(principal, now),
            )
        return await self._compute_role_map(principal, now)

    async def _active_role_slugs(self, principal: PrincipalKey, now: datetime) -> set[str]:
        return active_keys(await self._role_map(principal, now), now)

    async def _active_role_grants(self, principal: PrincipalKey, now: datetime):
        expirable = self.settings.expirable_roles.enabled
        return [
            (role, expires_at if expirable else None)
            for role, expires_at in await self.store.grants.principal_roles(principal)
            if not expirable or is_active(expires_at, now)
        ]

    async def _active_direct_grants(self, principal: PrincipalKey, now: datetime):
        expirable = self.settings.expirable_permissions.enabled
        return [
            (permission, expires_at if expirable else None)
            for permission, expires_at in await self.store.grants.principal_permissions(principal)
            if not expirable or is_active(expires_at, now)
        ]

    async def _compute_role_permission_slugs(self, role_id: int) -> list[str]:
        return sorted(permission.slug for permission in await self.store.roles.get_permissions(role_id))

    async def _role_permission_slugs(self, role_id: int) -> list[str]:
        if self.cache.permission_cache_enabled:
            return await self.cache.remember(
                self.cache.role_permissions_key(role_id),
                lambda: self._compute_role_permission_slugs(role_id),
            )
        return await self._compute_role_permission_slugs(role_id)

    async def _compute_permission_map(self, principal: PrincipalKey, now: datetime) -> ExpiryMap:
        pairs: list[tuple[str, datetime | None]] = [
            (permission.slug, expires_at)
            for permission, expires_at in await self._active_direct_grants(principal, now)
        ]

        role_grants = await self._active_role_grants(principal, now)
        if self.settings.performance.eager_loading:
            loaded = await self.store.roles.load_permissions([role.id for role, _ in role_grants])
            for role, expires_at in role_grants:
                pairs.extend((permission.slug, expires_at) for permission in loaded.get(role.id, ()))
        else:
            for role, expires_at in role_grants:
                pairs.extend(
                    (slug, expires_at) for slug in await self._role_permission_slugs(role.id)
                )
        logger.debug(
            "Resolved effective permissions principal=%s roles=%d sources=%d",
            principal.cache_id,
            len(role_grants),
            len(pairs),
        )
        return merge_expiries(pairs)

    async def _permission_map(self, principal: PrincipalKey, now: datetime) -> ExpiryMap:
        if self.cache.permission_cache_enabled:
            return await self.cache.remember(
                self.cache.user_permissions_key(principal),
                lambda: self._compute_permission_map(principal, now),
            )
        return await self._compute_permission_map(principal, now)

    async def _active_permission_slugs(self, principal: PrincipalKey, now: datetime) -> set[str]:
        return active_keys(await self._permission_map(principal, now), now)

    async def _compute_permission_id_map(self, principal: PrincipalKey, now: datetime) -> ExpiryMap:
        pairs: list[tuple[int, datetime | None]] = [
            (permission.id, expires_at)
            for permission, expires_at in await self._active_direct_grants(principal, now)
        ]
        role_grants = await self._active_role_grants(principal, now)
        loaded = await self.store.roles.load_permissions([role.id for role, _ in role_grants])
        for role, expires_at in role_grants:
            pairs.extend((permission.id, expires_at) for permission in loaded.get(role.id, ()))
        return merge_expiries(pairs)

    async def _permission_id_map(self, principal: PrincipalKey, now: datetime) -> ExpiryMap:
        if self.cache.permission_cache_enabled:
            return await self.cache.remember(
                self.cache.user_permission_ids_key(principal),
                lambda: self._compute_permission_id_map(principal, now),
            )
        return await self._compute_permission_id_map(principal, now)

    # Roles

    async def _has_role(self, principal: PrincipalKey, role: RoleLike, now: datetime) -> bool:
        slug = await self.identifiers.role_slug(role)
        return slug in await self._active_role_slugs(principal, now)

    async def has_role(self, principal: PrincipalLike, role: RoleLike | Iterable[RoleLike]) -> bool:
        """Check whether the principal holds a role.

        Args:
            principal: Principal object, composite key or bare id
            role: Role entity, id or slug; an iterable means "any of these"

        Raises:
            NotFoundError: If a role is given by an unknown id
        """
        key = self._principal(principal)
        now = self.clock()
        if _is_many(role):
            return await self._has_any_role(key, role, now)
        return await self._has_role(key, role, now)

    async def _has_any_role(self, principal: PrincipalKey, roles: Iterable[RoleLike], now: datetime) -> bool:
        for role in roles:
            if await self._has_role(principal, role, now):
                return True
        return False

    async def has_any_role(self, principal: PrincipalLike, roles: Iterable[RoleLike]) -> bool:
        return await self._has_any_role(self._principal(principal), roles, self.clock())

    async def has_all_roles(self, principal: PrincipalLike, roles: Iterable[RoleLike]) -> bool:
        key = self._principal(principal)
        now = self.clock()
        for role in roles:
            if not await self._has_role(key, role, now):
                return False
        return True

    async def get_role_slugs(self, principal: PrincipalLike) -> set[str]:
        return await self._active_role_slugs(self._principal(principal), self.clock())

    async def _is_super_admin(self, principal: PrincipalKey, now: datetime) -> bool:
        if not self.settings.super_admin.enabled:
            return False
        return self.settings.super_admin.role_slug in await self._active_role_slugs(principal, now)

    async def is_super_admin(self, principal: PrincipalLike) -> bool:
        return await self._is_super_admin(self._principal(principal), self.clock())

    # Permissions

    async def _has_permission(
        self, principal: PrincipalKey, permission: PermissionLike, now: datetime
    ) -> bool:
        if await self._is_super_admin(principal, now):
            return True

        slug = await self.identifiers.permission_slug(permission)
        granted = await self._active_permission_slugs(principal, now)
        if slug in granted:
            return True
        if self.settings.wildcard_permissions.enabled:
            return any(fnmatchcase(slug, pattern) for pattern in granted)
        return False

    async def has_permission(self, principal: PrincipalLike, permission: PermissionLike) -> bool:
        """Check whether the principal holds a permission directly or through a role.

        Super-admins pass every check, including checks for permissions that
        do not exist. With wildcards enabled a granted ``posts.*`` matches a
        requested ``posts.edit``; the requested string is never a pattern.

        Raises:
            NotFoundError: If the permission is given by an unknown id
        """
        return await self._has_permission(self._principal(principal), permission, self.clock())

    async def has_any_permission(
        self, principal: PrincipalLike, permissions: Iterable[PermissionLike]
    ) -> bool:
        key = self._principal(principal)
        now = self.clock()
        for permission in permissions:
            if await self._has_permission(key, permission, now):
                return True
        return False

    async def has_all_permissions(
        self, principal: PrincipalLike, permissions: Iterable[PermissionLike]
    ) -> bool:
        key = self._principal(principal)
        now = self.clock()
        for permission in permissions:
            if not await self._has_permission(key, permission, now):
                return False
        return True

    async def get_permission_slugs(self, principal: PrincipalLike) -> set[str]:
        return await self._active_permission_slugs(self._principal(principal), self.clock())

    async def get_all_permissions(self, principal: PrincipalLike) -> list[Permission]:
        """Return every effective permission entity, ordered by id."""
        key = self._principal(principal)
        now = self.clock()
        ids = {int(permission_id) for permission_id in active_keys(await self._permission_id_map(key, now), now)}
        return await self.store.permissions.get_many(ids)

    async def role_has_permission(self, role: RoleLike, permission: PermissionLike) -> bool:
        """Check a role's own permission set (exact slug match)."""
        role_id = await self.identifiers.role_id(role)
        slug = await self.identifiers.permission_slug(permission)
        return slug in await self._role_permission_slugs(role_id)

    # Principal queries

    async def _holders(
        self,
        relation: Relation,
        target_ids: set[int],
        principal_type: str | None,
        expirable: bool,
    ) -> set[PrincipalKey]:
        now = self.clock()
        rows = await self.store.grants.principals_holding(
            relation, target_ids, principal_type=principal_type
        )
        return {key for key, expires_at in rows if not expirable or is_active(expires_at, now)}

    async def principals_with_role(
        self,
        roles: RoleLike | Iterable[RoleLike],
        principal_type: str | None = None,
    ) -> set[PrincipalKey]:
        """Principals holding the role, or any of several roles.

        Unknown slugs match nothing. Expired grants are skipped when expirable
        roles are enabled. Only direct role grants count.
        """
        role_ids = await self.identifiers.known_role_ids(roles if _is_many(roles) else [roles])
        return await self._holders(
            PRINCIPAL_ROLES, role_ids, principal_type, self.settings.expirable_roles.enabled
        )

    async def principals_with_permission(
        self,
        permissions: PermissionLike | Iterable[PermissionLike],
        principal_type: str | None = None,
    ) -> set[PrincipalKey]:
        """Principals granted the permission directly (role-derived grants are not included)."""
        permission_ids = await self.identifiers.known_permission_ids(
            permissions if _is_many(permissions) else [permissions]
        )
        return await self._holders(
            PRINCIPAL_PERMISSIONS,
            permission_ids,
            principal_type,
            self.settings.expirable_permissions.enabled,
        )

    async def principals_without_role(
        self,
        candidates: Iterable[PrincipalLike],
        roles: RoleLike | Iterable[RoleLike],
    ) -> list[PrincipalKey]:
        """Filter ``candidates`` down to those not holding any of the roles.

        There is no principal table to scan, so the caller supplies the
        population; candidate order is kept.
        """
        keys = [self._principal(candidate) for candidate in candidates]
        holders = await self.principals_with_role(roles)
        return [key for key in keys if key not in holders]

    async def principals_without_permission(
        self,
        candidates: Iterable[PrincipalLike],
        permissions: PermissionLike | Iterable[PermissionLike],
    ) -> list[PrincipalKey]:
        keys = [self._principal(candidate) for candidate in candidates]
        holders = await self.principals_with_permission(permissions)
        return [key for key in keys if key not in holders]
