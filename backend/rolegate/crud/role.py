from collections import defaultdict

from sqlalchemy import delete, select

from ..domain.ports.principal import PrincipalKey
from ..models.permission import Permission
from ..models.principal_role import PrincipalRole
from ..models.role import Role
from ..models.role_permission import RolePermission
from ._catalog import CatalogRepository


class RoleRepository(CatalogRepository[Role]):
    model = Role
    entity_name = "Role"

    async def _delete_links(self, entity_id: int) -> None:
        await self.session.execute(
            delete(RolePermission).where(RolePermission.role_id == entity_id)
        )
        await self.session.execute(
            delete(PrincipalRole).where(PrincipalRole.role_id == entity_id)
        )

    async def get_permissions(self, role_id: int) -> list[Permission]:
        result = await self.session.execute(
            select(Permission)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
            .order_by(Permission.id)
        )
        return list(result.scalars().all())

    async def load_permissions(self, role_ids: set[int] | list[int]) -> dict[int, set[Permission]]:
        """Batch-fetch the permissions of several roles in one query."""
        loaded: dict[int, set[Permission]] = defaultdict(set)
        role_ids = set(role_ids)
        if not role_ids:
            return {}
        result = await self.session.execute(
            select(RolePermission.role_id, Permission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(RolePermission.role_id.in_(role_ids))
        )
        for role_id, permission in result.all():
            loaded[role_id].add(permission)
        return {role_id: loaded.get(role_id, set()) for role_id in role_ids}

    async def list_principals_with_role(self, role_id: int) -> set[PrincipalKey]:
        result = await self.session.execute(
            select(PrincipalRole.principal_id, PrincipalRole.principal_type)
            .where(PrincipalRole.role_id == role_id)
            .distinct()
        )
        return {PrincipalKey(principal_id, principal_type) for principal_id, principal_type in result.all()}
