from .base import Base
from .role import Role
from .permission import Permission
from .role_permission import RolePermission
from .principal_role import PrincipalRole
from .principal_permission import PrincipalPermission

__all__ = [
    "Base",
    "Role",
    "Permission",
    "RolePermission",
    "PrincipalRole",
    "PrincipalPermission",
]
