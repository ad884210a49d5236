from .grant import (
    PRINCIPAL_PERMISSIONS,
    PRINCIPAL_ROLES,
    ROLE_PERMISSIONS,
    UNCHANGED,
    GrantRepository,
    MembershipDiff,
    PermissionGrant,
    Relation,
    RoleGrant,
)
from .permission import PermissionRepository
from .role import RoleRepository
from .store import GrantStore

__all__ = [
    "GrantRepository",
    "GrantStore",
    "MembershipDiff",
    "PermissionGrant",
    "PermissionRepository",
    "PRINCIPAL_PERMISSIONS",
    "PRINCIPAL_ROLES",
    "Relation",
    "ROLE_PERMISSIONS",
    "RoleGrant",
    "RoleRepository",
    "UNCHANGED",
]
