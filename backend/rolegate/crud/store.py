from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from .grant import GrantRepository
from .permission import PermissionRepository
from .role import RoleRepository


class GrantStore:
    """The three repositories sharing one session and one unit of work.

    With ``autocommit`` every repository write commits on its own, which is
    how mutations run when transactions are disabled in configuration.
    """

    def __init__(self, session: AsyncSession, settings: Settings, *, autocommit: bool | None = None):
        if autocommit is None:
            autocommit = not settings.performance.use_transactions
        self.session = session
        self.autocommit = autocommit
        self.roles = RoleRepository(session, settings.guards, autocommit=autocommit)
        self.permissions = PermissionRepository(session, settings.guards, autocommit=autocommit)
        self.grants = GrantRepository(session, autocommit=autocommit)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
