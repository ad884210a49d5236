from sqlalchemy import delete, select

from ..domain.ports.principal import PrincipalKey
from ..models.permission import Permission
from ..models.principal_permission import PrincipalPermission
from ..models.role_permission import RolePermission
from ._catalog import CatalogRepository


class PermissionRepository(CatalogRepository[Permission]):
    model = Permission
    entity_name = "Permission"

    async def _delete_links(self, entity_id: int) -> None:
        await self.session.execute(
            delete(RolePermission).where(RolePermission.permission_id == entity_id)
        )
        await self.session.execute(
            delete(PrincipalPermission).where(PrincipalPermission.permission_id == entity_id)
        )

    async def list_principals_with_permission(self, permission_id: int) -> set[PrincipalKey]:
        result = await self.session.execute(
            select(PrincipalPermission.principal_id, PrincipalPermission.principal_type)
            .where(PrincipalPermission.permission_id == permission_id)
            .distinct()
        )
        return {PrincipalKey(principal_id, principal_type) for principal_id, principal_type in result.all()}
