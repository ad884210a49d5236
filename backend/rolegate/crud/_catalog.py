from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import GuardSettings
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.permission import Permission
from ..models.role import Role

EntityT = TypeVar("EntityT", Role, Permission)


def name_from_slug(slug: str) -> str:
    """'create-post' -> 'Create Post'."""
    return " ".join(part.capitalize() for part in slug.replace("_", "-").split("-") if part)


class CatalogRepository(ABC, Generic[EntityT]):
    """Slug-addressed CRUD shared by roles and permissions."""

    model: ClassVar[type]
    entity_name: ClassVar[str] = "Entity"

    def __init__(
        self,
        session: AsyncSession,
        guards: GuardSettings | None = None,
        *,
        autocommit: bool = False,
    ):
        self.session = session
        self.guards = guards or GuardSettings()
        self.autocommit = autocommit

    async def _write(self) -> None:
        if self.autocommit:
            await self.session.commit()
        else:
            await self.session.flush()

    def _guard(self, guard: str | None) -> str:
        return guard or self.guards.default

    def _clean_slug(self, slug: str) -> str:
        slug = slug.strip()
        if not slug:
            raise ValidationError(f"{self.entity_name} slug must not be empty")
        return slug

    async def _ensure_slug_free(self, slug: str, guard: str, entity_id: int | None = None) -> None:
        existing = await self.get_by_slug(slug, guard)
        if existing is not None and existing.id != entity_id:
            raise ConflictError(
                f"{self.entity_name} '{slug}' already exists",
                details={"slug": slug, "guard": guard},
            )

    async def create(
        self,
        slug: str,
        name: str | None = None,
        description: str | None = None,
        guard: str | None = None,
    ) -> EntityT:
        slug = self._clean_slug(slug)
        guard = self._guard(guard)
        await self._ensure_slug_free(slug, guard)

        entity = self.model(
            slug=slug,
            name=name or name_from_slug(slug),
            description=description,
            guard=guard,
        )
        self.session.add(entity)
        try:
            await self._write()
        except IntegrityError as exc:
            raise ConflictError(
                f"{self.entity_name} '{slug}' already exists",
                details={"slug": slug, "guard": guard},
            ) from exc
        await self.session.refresh(entity)
        return entity

    async def get_by_id(self, entity_id: int) -> EntityT | None:
        return await self.session.get(self.model, entity_id)

    async def get_by_slug(self, slug: str, guard: str | None = None) -> EntityT | None:
        query = select(self.model).where(self.model.slug == slug)
        # With guard scoping disabled every guard shares one slug namespace
        if self.guards.enabled:
            query = query.where(self.model.guard == self._guard(guard))
        result = await self.session.execute(query.order_by(self.model.id))
        return result.scalars().first()

    async def get_or_fail(self, entity_id: int) -> EntityT:
        entity = await self.get_by_id(entity_id)
        if entity is None:
            raise NotFoundError(
                f"{self.entity_name} not found", details={"id": entity_id}
            )
        return entity

    async def get_by_slug_or_fail(self, slug: str, guard: str | None = None) -> EntityT:
        entity = await self.get_by_slug(slug, guard)
        if entity is None:
            raise NotFoundError(
                f"{self.entity_name} '{slug}' not found",
                details={"slug": slug, "guard": self._guard(guard)},
            )
        return entity

    async def get_many(self, ids: set[int] | list[int]) -> list[EntityT]:
        if not ids:
            return []
        result = await self.session.execute(
            select(self.model).where(self.model.id.in_(set(ids))).order_by(self.model.id)
        )
        return list(result.scalars().all())

    async def find_or_create(
        self,
        slug: str,
        name: str | None = None,
        guard: str | None = None,
    ) -> EntityT:
        existing = await self.get_by_slug(slug, guard)
        if existing is not None:
            return existing
        return await self.create(slug, name=name, guard=guard)

    async def list_all(self, guard: str | None = None) -> list[EntityT]:
        query = select(self.model)
        if guard is not None and self.guards.enabled:
            query = query.where(self.model.guard == guard)
        result = await self.session.execute(query.order_by(self.model.id))
        return list(result.scalars().all())

    async def update(self, entity: EntityT, **fields: Any) -> EntityT:
        for field in fields:
            if field not in {"slug", "name", "description", "guard"}:
                raise ValidationError(f"Unknown {self.entity_name.lower()} field: {field}")
        if "slug" in fields:
            fields["slug"] = self._clean_slug(fields["slug"])
        if "guard" in fields:
            fields["guard"] = self._guard(fields["guard"])
        if "slug" in fields or "guard" in fields:
            # Checked before assignment so the lookup cannot autoflush the rename
            await self._ensure_slug_free(
                fields.get("slug", entity.slug),
                fields.get("guard", entity.guard),
                entity.id,
            )
        for field, value in fields.items():
            setattr(entity, field, value)
        try:
            await self._write()
        except IntegrityError as exc:
            raise ConflictError(
                f"{self.entity_name} '{entity.slug}' already exists",
                details={"slug": entity.slug, "guard": entity.guard},
            ) from exc
        await self.session.refresh(entity)
        return entity

    async def delete(self, entity: EntityT) -> None:
        await self._delete_links(entity.id)
        await self.session.delete(entity)
        await self._write()

    @abstractmethod
    async def _delete_links(self, entity_id: int) -> None:
        """Remove link and grant rows referencing the entity."""
