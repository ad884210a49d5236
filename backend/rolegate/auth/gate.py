"""Ability checks layered over the resolver.

``before_hook`` is the pre-check hosts register ahead of their own ability
checks: it grants when the principal is a super-admin or holds a permission
named like the ability, and otherwise abstains so the next check decides.
It never denies.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from ..config import Settings
from ..domain.ports.principal import Principal
from ..errors import AuthorizationError
from ..services.resolver import PermissionResolver

logger = logging.getLogger(__name__)


class GateResult(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ABSTAIN = "abstain"


Check = Callable[..., Awaitable[GateResult]]


async def before_hook(
    resolver: PermissionResolver, principal: Principal | None, ability: str
) -> GateResult:
    if principal is None:
        return GateResult.ABSTAIN
    if await resolver.is_super_admin(principal):
        return GateResult.ALLOW
    if await resolver.has_permission(principal, ability):
        return GateResult.ALLOW
    return GateResult.ABSTAIN


class Gate:
    """Runs registered checks in order; the first non-abstaining one decides.

    Checks receive ``(principal, ability, *arguments)``. With
    ``settings.gate.enabled`` the permission ``before_hook`` runs ahead of
    every other check.
    """

    def __init__(self, resolver: PermissionResolver, settings: Settings):
        self.resolver = resolver
        self.settings = settings
        self._before: list[Check] = []
        self._abilities: dict[str, list[Check]] = {}

    def before(self, check: Check) -> Check:
        self._before.append(check)
        return check

    def define(self, ability: str, check: Check) -> Check:
        self._abilities.setdefault(ability, []).append(check)
        return check

    def _permission_hook_enabled(self) -> bool:
        return self.settings.gate.enabled and self.settings.gate.before_callback

    async def inspect(self, principal: Principal | None, ability: str, *arguments: Any) -> GateResult:
        if self._permission_hook_enabled():
            result = await before_hook(self.resolver, principal, ability)
            if result is not GateResult.ABSTAIN:
                return result

        for check in [*self._before, *self._abilities.get(ability, ())]:
            result = await check(principal, ability, *arguments)
            if result is not GateResult.ABSTAIN:
                return result
        return GateResult.ABSTAIN

    async def allows(self, principal: Principal | None, ability: str, *arguments: Any) -> bool:
        return await self.inspect(principal, ability, *arguments) is GateResult.ALLOW

    async def denies(self, principal: Principal | None, ability: str, *arguments: Any) -> bool:
        return not await self.allows(principal, ability, *arguments)

    async def authorize(self, principal: Principal | None, ability: str, *arguments: Any) -> None:
        """
        Raises:
            AuthorizationError: Unless a check allowed the ability
        """
        if not await self.allows(principal, ability, *arguments):
            logger.info("Gate denied ability=%s", ability)
            raise AuthorizationError(
                f"This action is unauthorized: {ability}",
                details={"ability": ability},
            )
