"""Grant relations and the membership diffing used by every mutation.

``replace_membership`` is the single write path for links and grants: it
reads the owner's current target set, computes what to attach, detach and
re-date, and touches only those rows. Callers get the diff back so cache
invalidation can be limited to what actually changed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..clock import ensure_utc
from ..domain.ports.principal import PrincipalKey
from ..models.permission import Permission
from ..models.principal_permission import PrincipalPermission
from ..models.principal_role import PrincipalRole
from ..models.role import Role
from ..models.role_permission import RolePermission


@dataclass(frozen=True)
class Relation:
    name: str
    model: type
    target_column: str
    time_bounded: bool

    @property
    def owned_by_principal(self) -> bool:
        return self.model is not RolePermission


ROLE_PERMISSIONS = Relation("role_permissions", RolePermission, "permission_id", False)
PRINCIPAL_ROLES = Relation("principal_roles", PrincipalRole, "role_id", True)
PRINCIPAL_PERMISSIONS = Relation(
    "principal_permissions", PrincipalPermission, "permission_id", True
)


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED: Any = _Unchanged()


@dataclass(frozen=True)
class MembershipDiff:
    attached: frozenset[int] = field(default_factory=frozenset)
    detached: frozenset[int] = field(default_factory=frozenset)
    updated: frozenset[int] = field(default_factory=frozenset)

    @property
    def changed(self) -> bool:
        return bool(self.attached or self.detached or self.updated)


class RoleGrant(NamedTuple):
    role: Role
    expires_at: datetime | None


class PermissionGrant(NamedTuple):
    permission: Permission
    expires_at: datetime | None


class GrantRepository:
    def __init__(self, session: AsyncSession, *, autocommit: bool = False):
        self.session = session
        self.autocommit = autocommit

    async def _write(self) -> None:
        if self.autocommit:
            await self.session.commit()
        else:
            await self.session.flush()

    @staticmethod
    def _owner_values(relation: Relation, owner: PrincipalKey | int) -> dict[str, Any]:
        if relation.owned_by_principal:
            if not isinstance(owner, PrincipalKey):
                raise TypeError(f"{relation.name} is owned by a principal, got {owner!r}")
            return {
                "principal_id": owner.principal_id,
                "principal_type": owner.principal_type,
            }
        if not isinstance(owner, int) or isinstance(owner, bool):
            raise TypeError(f"{relation.name} is owned by a role id, got {owner!r}")
        return {"role_id": owner}

    def _owner_clause(self, relation: Relation, owner: PrincipalKey | int):
        model = relation.model
        values = self._owner_values(relation, owner)
        return and_(*(getattr(model, column) == value for column, value in values.items()))

    async def _current_rows(self, relation: Relation, owner: PrincipalKey | int) -> dict[int, Any]:
        result = await self.session.execute(
            select(relation.model).where(self._owner_clause(relation, owner))
        )
        return {
            getattr(row, relation.target_column): row for row in result.scalars().all()
        }

    async def current_targets(self, relation: Relation, owner: PrincipalKey | int) -> set[int]:
        target = getattr(relation.model, relation.target_column)
        result = await self.session.execute(
            select(target).where(self._owner_clause(relation, owner))
        )
        return set(result.scalars().all())

    async def replace_membership(
        self,
        relation: Relation,
        owner: PrincipalKey | int,
        target_ids: set[int] | list[int] | tuple[int, ...],
        *,
        detaching: bool = True,
        expires_at: datetime | None = UNCHANGED,
    ) -> MembershipDiff:
        """Make the owner's target set match ``target_ids``.

        Args:
            relation: Which link table to operate on
            owner: Role id for role permissions, principal key otherwise
            target_ids: Desired role or permission ids
            detaching: When False, existing targets missing from
                ``target_ids`` are kept (attach-only)
            expires_at: New expiry for every desired target; UNCHANGED keeps
                existing expiries and inserts never-expiring rows

        Returns:
            The rows that were actually attached, detached or re-dated
        """
        if expires_at is not UNCHANGED and not relation.time_bounded:
            raise ValueError(f"{relation.name} rows cannot expire")

        desired = set(target_ids)
        rows = await self._current_rows(relation, owner)
        current = set(rows)

        attached = desired - current
        detached = current - desired if detaching else set()
        updated: set[int] = set()

        if expires_at is not UNCHANGED:
            wanted = ensure_utc(expires_at)
            for target_id in desired & current:
                row = rows[target_id]
                if ensure_utc(row.expires_at) != wanted:
                    row.expires_at = wanted
                    updated.add(target_id)

        owner_values = self._owner_values(relation, owner)
        for target_id in sorted(attached):
            values = dict(owner_values)
            values[relation.target_column] = target_id
            if relation.time_bounded:
                values["expires_at"] = None if expires_at is UNCHANGED else ensure_utc(expires_at)
            self.session.add(relation.model(**values))

        if detached:
            target = getattr(relation.model, relation.target_column)
            await self.session.execute(
                delete(relation.model).where(
                    self._owner_clause(relation, owner), target.in_(detached)
                )
            )

        diff = MembershipDiff(frozenset(attached), frozenset(detached), frozenset(updated))
        if diff.changed:
            await self._write()
        return diff

    async def detach(
        self,
        relation: Relation,
        owner: PrincipalKey | int,
        target_ids: set[int] | list[int] | tuple[int, ...],
    ) -> MembershipDiff:
        current = await self.current_targets(relation, owner)
        detached = current & set(target_ids)
        if detached:
            target = getattr(relation.model, relation.target_column)
            await self.session.execute(
                delete(relation.model).where(
                    self._owner_clause(relation, owner), target.in_(detached)
                )
            )
            await self._write()
        return MembershipDiff(detached=frozenset(detached))

    async def principals_holding(
        self,
        relation: Relation,
        target_ids: set[int] | list[int],
        *,
        principal_type: str | None = None,
    ) -> list[tuple[PrincipalKey, datetime | None]]:
        """Principals with a grant to any of ``target_ids``, one row per grant.

        Expiry filtering is left to the caller.
        """
        if not relation.owned_by_principal:
            raise TypeError(f"{relation.name} is not granted to principals")
        target_ids = set(target_ids)
        if not target_ids:
            return []
        model = relation.model
        query = select(model.principal_id, model.principal_type, model.expires_at).where(
            getattr(model, relation.target_column).in_(target_ids)
        )
        if principal_type is not None:
            query = query.where(model.principal_type == principal_type)
        result = await self.session.execute(query)
        return [
            (PrincipalKey(principal_id, kind), ensure_utc(expires_at))
            for principal_id, kind, expires_at in result.all()
        ]

    async def principal_roles(self, principal: PrincipalKey) -> list[RoleGrant]:
        result = await self.session.execute(
            select(Role, PrincipalRole.expires_at)
            .join(PrincipalRole, PrincipalRole.role_id == Role.id)
            .where(self._owner_clause(PRINCIPAL_ROLES, principal))
            .order_by(Role.id)
        )
        return [RoleGrant(role, ensure_utc(expires_at)) for role, expires_at in result.all()]

    async def principal_permissions(self, principal: PrincipalKey) -> list[PermissionGrant]:
        result = await self.session.execute(
            select(Permission, PrincipalPermission.expires_at)
            .join(PrincipalPermission, PrincipalPermission.permission_id == Permission.id)
            .where(self._owner_clause(PRINCIPAL_PERMISSIONS, principal))
            .order_by(Permission.id)
        )
        return [
            PermissionGrant(permission, ensure_utc(expires_at))
            for permission, expires_at in result.all()
        ]
