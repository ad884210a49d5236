"""Write side of the permission system.

Every change to roles, permissions and grants goes through
``MutationGateway``. A mutation runs inside one store transaction; only
after it commits are the cache entries derived from the changed rows
forgotten. A failed mutation rolls back and leaves the cache alone.

Between commit and invalidation a concurrent reader may still observe the
previous sets. A role mutation can also race a concurrent assignment of that
role and miss the new holder. Both windows are bounded by the cache TTL.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ..clock import Clock, ensure_utc, utcnow
from ..config import Settings
from ..crud.grant import (
    PRINCIPAL_PERMISSIONS,
    PRINCIPAL_ROLES,
    ROLE_PERMISSIONS,
    MembershipDiff,
)
from ..crud.store import GrantStore
from ..domain.ports.principal import PrincipalKey, as_principal
from ..errors import CacheBackendError, ConfigurationError, TransactionFailure
from ..models.permission import Permission
from ..models.role import Role
from .cache import PermissionCache
from .identifiers import Identifiers, PermissionLike, RoleLike
from .resolver import PrincipalLike

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class _Applied:
    owner: PrincipalKey | int
    diff: MembershipDiff


class MutationGateway:
    """Applies grant mutations and keeps the permission cache consistent."""

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

    # Transaction handling

    async def _transaction(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work`` as one unit and commit it.

        Raises:
            TransactionFailure: If the store rejected the work; the session
                has been rolled back
        """
        try:
            result = await work()
            if not self.store.autocommit:
                await self.store.commit()
        except SQLAlchemyError as exc:
            await self.store.rollback()
            logger.error(
                "Grant mutation rolled back operation=%s error=%s",
                operation,
                exc,
            )
            raise TransactionFailure(
                f"{operation} failed and was rolled back",
                details={"operation": operation},
            ) from exc
        except Exception:
            await self.store.rollback()
            raise
        return result

    async def _invalidate(self, operation: str, invalidate: Callable[[], Awaitable[Any]]) -> None:
        # The mutation is committed at this point; a failure here must not
        # surface as a failed mutation.
        try:
            await invalidate()
        except (SQLAlchemyError, CacheBackendError) as exc:
            logger.error(
                "Cache invalidation failed, flushing operation=%s error=%s",
                operation,
                exc,
            )
            if not await self.cache.flush():
                logger.error("Cache flush fallback failed operation=%s", operation)

    async def _mutate_principal(
        self,
        operation: str,
        principal: PrincipalLike,
        work: Callable[[PrincipalKey], Awaitable[MembershipDiff]],
    ) -> MembershipDiff:
        key = self._principal(principal)
        diff = await self._transaction(operation, lambda: work(key))
        if diff.changed:
            await self._invalidate(operation, lambda: self.cache.clear_user_cache(key))
            logger.info(
                "Principal grants changed operation=%s principal=%s attached=%d detached=%d updated=%d",
                operation,
                key.cache_id,
                len(diff.attached),
                len(diff.detached),
                len(diff.updated),
            )
        return diff

    async def _mutate_role(
        self,
        operation: str,
        role: RoleLike,
        work: Callable[[int], Awaitable[MembershipDiff]],
    ) -> MembershipDiff:
        async def run() -> _Applied:
            role_id = await self.identifiers.role_id(role)
            return _Applied(role_id, await work(role_id))

        applied = await self._transaction(operation, run)
        if applied.diff.changed:
            await self._invalidate(operation, lambda: self._clear_role_holders(applied.owner))
        return applied.diff

    async def _clear_role_holders(self, role_id: int) -> None:
        holders = await self.store.roles.list_principals_with_role(role_id)
        cleared = await self.cache.clear_affected_users_caches(role_id, holders)
        logger.info("Role permissions changed role_id=%s holders_cleared=%d", role_id, cleared)

    def _expiry(self, operation: str, expires_at: datetime) -> datetime:
        expires_at = ensure_utc(expires_at)
        if expires_at <= self.clock():
            logger.warning(
                "Granting with an expiry already in the past operation=%s expires_at=%s",
                operation,
                expires_at.isoformat(),
            )
        return expires_at

    def _require_expirable_roles(self) -> None:
        if not self.settings.expirable_roles.enabled:
            raise ConfigurationError("Expirable roles are not enabled in config.")

    def _require_expirable_permissions(self) -> None:
        if not self.settings.expirable_permissions.enabled:
            raise ConfigurationError("Expirable permissions are not enabled in config.")

    # Principal roles

    async def assign_role(self, principal: PrincipalLike, *roles: RoleLike) -> MembershipDiff:
        """Attach roles to a principal, keeping the ones it already holds."""

        async def work(key: PrincipalKey) -> MembershipDiff:
            role_ids = await self.identifiers.role_ids(roles)
            return await self.store.grants.replace_membership(
                PRINCIPAL_ROLES, key, role_ids, detaching=False
            )

        return await self._mutate_principal("assign_role", principal, work)

    async def remove_role(self, principal: PrincipalLike, *roles: RoleLike) -> MembershipDiff:
        async def work(key: PrincipalKey) -> MembershipDiff:
            role_ids = await self.identifiers.role_ids(roles)
            return await self.store.grants.detach(PRINCIPAL_ROLES, key, role_ids)

        return await self._mutate_principal("remove_role", principal, work)

    async def sync_roles(self, principal: PrincipalLike, roles: Iterable[RoleLike]) -> MembershipDiff:
        """Make the principal hold exactly ``roles``.

        Roles the principal keeps retain their existing expiry.
        """
        roles = list(roles)

        async def work(key: PrincipalKey) -> MembershipDiff:
            role_ids = await self.identifiers.role_ids(roles)
            return await self.store.grants.replace_membership(PRINCIPAL_ROLES, key, role_ids)

        return await self._mutate_principal("sync_roles", principal, work)

    async def assign_role_until(
        self, principal: PrincipalLike, role: RoleLike, expires_at: datetime
    ) -> MembershipDiff:
        """Grant a role that stops counting at ``expires_at``.

        Re-assigning a held role moves its expiry. Naive datetimes are read
        as UTC.

        Raises:
            ConfigurationError: If expirable roles are disabled
        """
        self._require_expirable_roles()
        expires_at = self._expiry("assign_role_until", expires_at)

        async def work(key: PrincipalKey) -> MembershipDiff:
            role_id = await self.identifiers.role_id(role)
            return await self.store.grants.replace_membership(
                PRINCIPAL_ROLES, key, [role_id], detaching=False, expires_at=expires_at
            )

        return await self._mutate_principal("assign_role_until", principal, work)

    # Principal permissions

    async def give_permission_to(
        self, principal: PrincipalLike, *permissions: PermissionLike
    ) -> MembershipDiff:
        async def work(key: PrincipalKey) -> MembershipDiff:
            permission_ids = await self.identifiers.permission_ids(permissions)
            return await self.store.grants.replace_membership(
                PRINCIPAL_PERMISSIONS, key, permission_ids, detaching=False
            )

        return await self._mutate_principal("give_permission_to", principal, work)

    async def revoke_permission_to(
        self, principal: PrincipalLike, *permissions: PermissionLike
    ) -> MembershipDiff:
        async def work(key: PrincipalKey) -> MembershipDiff:
            permission_ids = await self.identifiers.permission_ids(permissions)
            return await self.store.grants.detach(PRINCIPAL_PERMISSIONS, key, permission_ids)

        return await self._mutate_principal("revoke_permission_to", principal, work)

    async def sync_permissions(
        self, principal: PrincipalLike, permissions: Iterable[PermissionLike]
    ) -> MembershipDiff:
        permissions = list(permissions)

        async def work(key: PrincipalKey) -> MembershipDiff:
            permission_ids = await self.identifiers.permission_ids(permissions)
            return await self.store.grants.replace_membership(
                PRINCIPAL_PERMISSIONS, key, permission_ids
            )

        return await self._mutate_principal("sync_permissions", principal, work)

    async def give_permission_to_until(
        self, principal: PrincipalLike, permission: PermissionLike, expires_at: datetime
    ) -> MembershipDiff:
        """Grant a direct permission that stops counting at ``expires_at``.

        Raises:
            ConfigurationError: If expirable permissions are disabled
        """
        self._require_expirable_permissions()
        expires_at = self._expiry("give_permission_to_until", expires_at)

        async def work(key: PrincipalKey) -> MembershipDiff:
            permission_id = await self.identifiers.permission_id(permission)
            return await self.store.grants.replace_membership(
                PRINCIPAL_PERMISSIONS,
                key,
                [permission_id],
                detaching=False,
                expires_at=expires_at,
            )

        return await self._mutate_principal("give_permission_to_until", principal, work)

    # Role permissions

    async def give_permission_to_role(
        self, role: RoleLike, *permissions: PermissionLike
    ) -> MembershipDiff:
        """Attach permissions to a role and forget the sets of all its holders."""

        async def work(role_id: int) -> MembershipDiff:
            permission_ids = await self.identifiers.permission_ids(permissions)
            return await self.store.grants.replace_membership(
                ROLE_PERMISSIONS, role_id, permission_ids, detaching=False
            )

        return await self._mutate_role("give_permission_to_role", role, work)

    async def revoke_permission_from_role(
        self, role: RoleLike, *permissions: PermissionLike
    ) -> MembershipDiff:
        async def work(role_id: int) -> MembershipDiff:
            permission_ids = await self.identifiers.permission_ids(permissions)
            return await self.store.grants.detach(ROLE_PERMISSIONS, role_id, permission_ids)

        return await self._mutate_role("revoke_permission_from_role", role, work)

    async def sync_role_permissions(
        self, role: RoleLike, permissions: Iterable[PermissionLike]
    ) -> MembershipDiff:
        permissions = list(permissions)

        async def work(role_id: int) -> MembershipDiff:
            permission_ids = await self.identifiers.permission_ids(permissions)
            return await self.store.grants.replace_membership(
                ROLE_PERMISSIONS, role_id, permission_ids
            )

        return await self._mutate_role("sync_role_permissions", role, work)

    # Catalogue

    async def create_role(
        self,
        slug: str,
        name: str | None = None,
        description: str | None = None,
        guard: str | None = None,
    ) -> Role:
        """Create a role; the name defaults to the title-cased slug.

        Raises:
            ConflictError: If the slug already exists in the guard
        """
        return await self._transaction(
            "create_role",
            lambda: self.store.roles.create(slug, name=name, description=description, guard=guard),
        )

    async def create_permission(
        self,
        slug: str,
        name: str | None = None,
        description: str | None = None,
        guard: str | None = None,
    ) -> Permission:
        return await self._transaction(
            "create_permission",
            lambda: self.store.permissions.create(
                slug, name=name, description=description, guard=guard
            ),
        )

    async def find_or_create_role(
        self, slug: str, name: str | None = None, guard: str | None = None
    ) -> Role:
        return await self._transaction(
            "find_or_create_role",
            lambda: self.store.roles.find_or_create(slug, name=name, guard=guard),
        )

    async def find_or_create_permission(
        self, slug: str, name: str | None = None, guard: str | None = None
    ) -> Permission:
        return await self._transaction(
            "find_or_create_permission",
            lambda: self.store.permissions.find_or_create(slug, name=name, guard=guard),
        )

    async def update_role(self, role: RoleLike, **fields: Any) -> Role:
        """Rename or re-describe a role; holders' cached role sets are forgotten."""

        async def work() -> Role:
            entity = await self.identifiers.role_entity(role)
            return await self.store.roles.update(entity, **fields)

        updated = await self._transaction("update_role", work)
        await self._invalidate("update_role", lambda: self._clear_role_holders(updated.id))
        return updated

    async def update_permission(self, permission: PermissionLike, **fields: Any) -> Permission:
        """Update a permission and flush the whole permission cache."""

        async def work() -> Permission:
            entity = await self.identifiers.permission_entity(permission)
            return await self.store.permissions.update(entity, **fields)

        updated = await self._transaction("update_permission", work)
        await self.cache.flush()
        return updated

    async def delete_role(self, role: RoleLike) -> None:
        """Delete a role with its links and grants, then flush the cache."""

        async def work() -> int:
            entity = await self.identifiers.role_entity(role)
            role_id = entity.id
            await self.store.roles.delete(entity)
            return role_id

        role_id = await self._transaction("delete_role", work)
        await self.cache.flush()
        logger.info("Role deleted role_id=%s", role_id)

    async def delete_permission(self, permission: PermissionLike) -> None:
        async def work() -> int:
            entity = await self.identifiers.permission_entity(permission)
            permission_id = entity.id
            await self.store.permissions.delete(entity)
            return permission_id

        permission_id = await self._transaction("delete_permission", work)
        await self.cache.flush()
        logger.info("Permission deleted permission_id=%s", permission_id)
