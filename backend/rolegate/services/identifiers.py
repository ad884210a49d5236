from __future__ import annotations

from typing import Iterable, Union

from ..crud.store import GrantStore
from ..models.permission import Permission
from ..models.role import Role

RoleLike = Union[Role, int, str]
PermissionLike = Union[Permission, int, str]


def _is_id(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class Identifiers:
    """Turns id / slug / entity arguments into ids or slugs.

    Slugs are looked up in the default guard. Unknown ids and slugs raise
    ``NotFoundError`` through the repositories.
    """

    def __init__(self, store: GrantStore):
        self.store = store

    async def role_id(self, role: RoleLike) -> int:
        if isinstance(role, Role):
            return role.id
        if _is_id(role):
            return (await self.store.roles.get_or_fail(role)).id
        if isinstance(role, str):
            return (await self.store.roles.get_by_slug_or_fail(role)).id
        raise TypeError(f"Expected a role, role id or slug, got {role!r}")

    async def role_ids(self, roles: Iterable[RoleLike]) -> list[int]:
        return [await self.role_id(role) for role in roles]

    async def role_entity(self, role: RoleLike) -> Role:
        if isinstance(role, Role):
            return role
        return await self.store.roles.get_or_fail(await self.role_id(role))

    async def role_slug(self, role: RoleLike) -> str:
        if isinstance(role, Role):
            return role.slug
        if _is_id(role):
            return (await self.store.roles.get_or_fail(role)).slug
        if isinstance(role, str):
            return role
        raise TypeError(f"Expected a role, role id or slug, got {role!r}")

    async def permission_id(self, permission: PermissionLike) -> int:
        if isinstance(permission, Permission):
            return permission.id
        if _is_id(permission):
            return (await self.store.permissions.get_or_fail(permission)).id
        if isinstance(permission, str):
            return (await self.store.permissions.get_by_slug_or_fail(permission)).id
        raise TypeError(f"Expected a permission, permission id or slug, got {permission!r}")

    async def permission_ids(self, permissions: Iterable[PermissionLike]) -> list[int]:
        return [await self.permission_id(permission) for permission in permissions]

    async def permission_entity(self, permission: PermissionLike) -> Permission:
        if isinstance(permission, Permission):
            return permission
        return await self.store.permissions.get_or_fail(await self.permission_id(permission))

    async def known_role_ids(self, roles: Iterable[RoleLike]) -> set[int]:
        """Like ``role_ids`` but unknown slugs are skipped instead of raising."""
        return await self._known_ids(self.store.roles, roles, Role)

    async def known_permission_ids(self, permissions: Iterable[PermissionLike]) -> set[int]:
        return await self._known_ids(self.store.permissions, permissions, Permission)

    @staticmethod
    async def _known_ids(repository, values, model: type) -> set[int]:
        ids: set[int] = set()
        for value in values:
            if isinstance(value, model):
                ids.add(value.id)
            elif _is_id(value):
                ids.add(value)
            elif isinstance(value, str):
                entity = await repository.get_by_slug(value)
                if entity is not None:
                    ids.add(entity.id)
            else:
                raise TypeError(f"Expected a {model.__name__.lower()}, id or slug, got {value!r}")
        return ids

    async def permission_slug(self, permission: PermissionLike) -> str:
        if isinstance(permission, Permission):
            return permission.slug
        if _is_id(permission):
            return (await self.store.permissions.get_or_fail(permission)).slug
        if isinstance(permission, str):
            return permission
        raise TypeError(f"Expected a permission, permission id or slug, got {permission!r}")
