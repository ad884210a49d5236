"""Tests for grant mutations, transactions and cache invalidation."""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from rolegate.config import PerformanceSettings, Settings, ToggleSettings
from rolegate.crud import PRINCIPAL_ROLES
from rolegate.domain.ports.principal import PrincipalKey
from rolegate.errors import (
    CacheBackendError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransactionFailure,
)
from rolegate.infrastructure.memory import MemoryCacheBackend

USER_7 = PrincipalKey("7", "user")


class DeleteFailingBackend(MemoryCacheBackend):
    async def delete(self, key: str) -> bool:
        raise CacheBackendError("delete unavailable", details={"key": key})


class TestPrincipalMutations:
    @pytest.mark.anyio
    async def test_assign_returns_diff(self, env) -> None:
        editor = await env.gateway.create_role("editor")
        writer = await env.gateway.create_role("writer")

        first = await env.gateway.assign_role(7, "editor", writer.id)
        second = await env.gateway.assign_role(7, editor)

        assert first.attached == {editor.id, writer.id}
        assert second.changed is False

    @pytest.mark.anyio
    async def test_assign_invalidates_principal_cache(self, env) -> None:
        await env.gateway.create_role("editor")
        assert await env.resolver.has_role(7, "editor") is False
        assert await env.cache.get(env.cache.user_roles_key(USER_7)) == {}

        await env.gateway.assign_role(7, "editor")

        assert await env.cache.get(env.cache.user_roles_key(USER_7)) is None
        assert await env.resolver.has_role(7, "editor") is True

    @pytest.mark.anyio
    async def test_remove_role(self, env) -> None:
        editor = await env.gateway.create_role("editor")
        await env.gateway.assign_role(7, "editor")
        assert await env.resolver.has_role(7, "editor") is True

        diff = await env.gateway.remove_role(7, "editor")

        assert diff.detached == {editor.id}
        assert await env.resolver.has_role(7, "editor") is False

    @pytest.mark.anyio
    async def test_sync_permissions(self, env) -> None:
        for slug in ("posts.edit", "posts.view"):
            await env.gateway.create_permission(slug)
        await env.gateway.give_permission_to(7, "posts.edit")

        await env.gateway.sync_permissions(7, ["posts.view"])

        assert await env.resolver.get_permission_slugs(7) == {"posts.view"}

    @pytest.mark.anyio
    async def test_unchanged_mutation_keeps_cache(self, env) -> None:
        await env.gateway.create_role("editor")
        await env.gateway.assign_role(7, "editor")
        await env.resolver.has_role(7, "editor")

        await env.gateway.assign_role(7, "editor")

        assert await env.cache.get(env.cache.user_roles_key(USER_7)) == {"editor": None}

    @pytest.mark.anyio
    async def test_until_requires_feature_flags(self, env) -> None:
        await env.gateway.create_role("editor")
        await env.gateway.create_permission("posts.edit")
        later = env.clock.now + timedelta(days=1)

        with pytest.raises(ConfigurationError):
            await env.gateway.assign_role_until(7, "editor", later)
        with pytest.raises(ConfigurationError):
            await env.gateway.give_permission_to_until(7, "posts.edit", later)

    @pytest.mark.anyio
    async def test_naive_expiry_is_utc(self, make_env) -> None:
        env = make_env(Settings(expirable_permissions=ToggleSettings(enabled=True)))
        await env.gateway.create_permission("posts.edit")
        naive = (env.clock.now + timedelta(hours=1)).replace(tzinfo=None)

        await env.gateway.give_permission_to_until(7, "posts.edit", naive)

        grants = await env.store.grants.principal_permissions(USER_7)
        assert grants[0].expires_at == env.clock.now + timedelta(hours=1)

    @pytest.mark.anyio
    async def test_reassigning_until_moves_expiry(self, make_env) -> None:
        env = make_env(Settings(expirable_roles=ToggleSettings(enabled=True)))
        editor = await env.gateway.create_role("editor")
        await env.gateway.assign_role_until(7, "editor", env.clock.now + timedelta(minutes=1))

        diff = await env.gateway.assign_role_until(7, "editor", env.clock.now + timedelta(days=1))
        env.clock.advance(hours=1)

        assert diff.updated == {editor.id}
        assert await env.resolver.has_role(7, "editor") is True

    @pytest.mark.anyio
    async def test_past_expiry_is_logged(self, make_env, caplog) -> None:
        env = make_env(Settings(expirable_permissions=ToggleSettings(enabled=True)))
        await env.gateway.create_permission("posts.edit")

        with caplog.at_level(logging.WARNING, logger="rolegate.services.gateway"):
            await env.gateway.give_permission_to_until(
                7, "posts.edit", env.clock.now - timedelta(seconds=1)
            )

        assert "already in the past" in caplog.text


class TestRoleMutations:
    @pytest.mark.anyio
    async def test_revoke_from_role_cascades_to_every_holder(self, env) -> None:
        await env.gateway.create_permission("posts.edit")
        role = await env.gateway.create_role("editor")
        await env.gateway.give_permission_to_role(role, "posts.edit")
        await env.gateway.assign_role("a", "editor")
        await env.gateway.assign_role("b", "editor")
        assert await env.resolver.has_permission("a", "posts.edit") is True
        assert await env.resolver.has_permission("b", "posts.edit") is True

        diff = await env.gateway.revoke_permission_from_role(role, "posts.edit")

        assert diff.changed is True
        assert await env.resolver.has_permission("a", "posts.edit") is False
        assert await env.resolver.has_permission("b", "posts.edit") is False

    @pytest.mark.anyio
    async def test_give_to_role_reaches_holders(self, env) -> None:
        await env.gateway.create_permission("posts.edit")
        await env.gateway.create_role("editor")
        await env.gateway.assign_role(7, "editor")
        assert await env.resolver.has_permission(7, "posts.edit") is False

        await env.gateway.give_permission_to_role("editor", "posts.edit")

        assert await env.resolver.has_permission(7, "posts.edit") is True

    @pytest.mark.anyio
    async def test_sync_role_permissions_clears_role_entry(self, make_env) -> None:
        env = make_env(Settings(performance=PerformanceSettings(eager_loading=False)))
        for slug in ("posts.edit", "posts.view"):
            await env.gateway.create_permission(slug)
        role = await env.gateway.create_role("editor")
        await env.gateway.give_permission_to_role(role, "posts.edit")
        assert await env.resolver.role_has_permission(role, "posts.edit") is True

        await env.gateway.sync_role_permissions(role, ["posts.view"])

        assert await env.cache.get(env.cache.role_permissions_key(role.id)) is None
        assert await env.resolver.role_has_permission(role, "posts.edit") is False
        assert await env.resolver.role_has_permission(role, "posts.view") is True


class TestCatalogue:
    @pytest.mark.anyio
    async def test_create_conflict_propagates(self, env) -> None:
        await env.gateway.create_role("editor")

        with pytest.raises(ConflictError):
            await env.gateway.create_role("editor")
        # Session is usable after the rollback
        assert (await env.gateway.find_or_create_role("editor")).slug == "editor"

    @pytest.mark.anyio
    async def test_find_or_create_permission_names_from_slug(self, env) -> None:
        permission = await env.gateway.find_or_create_permission("publish-post")

        assert permission.name == "Publish Post"
        assert (await env.gateway.find_or_create_permission("publish-post")).id == permission.id

    @pytest.mark.anyio
    async def test_delete_permission_flushes(self, env) -> None:
        await env.gateway.create_permission("posts.edit")
        await env.gateway.give_permission_to(7, "posts.edit")
        assert await env.resolver.has_permission(7, "posts.edit") is True

        await env.gateway.delete_permission("posts.edit")

        assert len(env.backend) == 0
        assert await env.resolver.has_permission(7, "posts.edit") is False

    @pytest.mark.anyio
    async def test_delete_role_removes_grants(self, env) -> None:
        await env.gateway.create_permission("posts.edit")
        await env.gateway.create_role("editor")
        await env.gateway.give_permission_to_role("editor", "posts.edit")
        await env.gateway.assign_role(7, "editor")
        assert await env.resolver.has_permission(7, "posts.edit") is True

        await env.gateway.delete_role("editor")

        assert await env.resolver.has_permission(7, "posts.edit") is False
        assert await env.resolver.get_role_slugs(7) == set()

    @pytest.mark.anyio
    async def test_update_permission_flushes(self, env) -> None:
        await env.gateway.create_permission("posts.edit")
        await env.gateway.give_permission_to(7, "posts.edit")
        await env.resolver.has_permission(7, "posts.edit")

        updated = await env.gateway.update_permission("posts.edit", slug="articles.edit")

        assert updated.slug == "articles.edit"
        assert await env.resolver.has_permission(7, "articles.edit") is True
        assert await env.resolver.has_permission(7, "posts.edit") is False

    @pytest.mark.anyio
    async def test_update_role_clears_holders(self, env) -> None:
        await env.gateway.create_role("editor")
        await env.gateway.assign_role(7, "editor")
        assert await env.resolver.has_role(7, "editor") is True

        await env.gateway.update_role("editor", slug="author")

        assert await env.resolver.has_role(7, "author") is True
        assert await env.resolver.has_role(7, "editor") is False


class TestFailures:
    @pytest.mark.anyio
    async def test_unknown_slug_raises_and_keeps_cache(self, env) -> None:
        await env.gateway.create_role("editor")
        await env.gateway.assign_role(7, "editor")
        await env.resolver.has_role(7, "editor")

        with pytest.raises(NotFoundError):
            await env.gateway.assign_role(7, "editor", "missing")

        assert await env.cache.get(env.cache.user_roles_key(USER_7)) == {"editor": None}
        assert len(await env.store.grants.current_targets(PRINCIPAL_ROLES, USER_7)) == 1

    @pytest.mark.anyio
    async def test_store_error_rolls_back_without_invalidation(self, env, monkeypatch) -> None:
        await env.gateway.create_role("editor")
        await env.resolver.has_role(7, "editor")
        monkeypatch.setattr(
            env.store.grants,
            "replace_membership",
            AsyncMock(side_effect=SQLAlchemyError("disk full")),
        )
        rollback = AsyncMock(wraps=env.store.rollback)
        monkeypatch.setattr(env.store, "rollback", rollback)

        with pytest.raises(TransactionFailure) as exc_info:
            await env.gateway.assign_role(7, "editor")

        assert exc_info.value.details == {"operation": "assign_role"}
        rollback.assert_awaited_once()
        assert await env.cache.get(env.cache.user_roles_key(USER_7)) == {}

    @pytest.mark.anyio
    async def test_failed_delete_falls_back_to_flush(self, make_env, caplog) -> None:
        env = make_env(backend=DeleteFailingBackend())
        await env.gateway.create_permission("posts.edit")
        await env.gateway.give_permission_to(7, "posts.edit")
        assert await env.resolver.has_permission(7, "posts.edit") is True

        with caplog.at_level(logging.ERROR, logger="rolegate.services.gateway"):
            diff = await env.gateway.revoke_permission_to(7, "posts.edit")

        assert diff.changed is True
        assert await env.resolver.has_permission(7, "posts.edit") is False
        assert "Cache invalidation failed, flushing" in caplog.text

    @pytest.mark.anyio
    async def test_failed_delete_on_role_change_flushes_holders(self, make_env) -> None:
        env = make_env(backend=DeleteFailingBackend())
        await env.gateway.create_role("editor")
        await env.gateway.create_permission("posts.edit")
        await env.gateway.give_permission_to_role("editor", "posts.edit")
        await env.gateway.assign_role(7, "editor")
        assert await env.resolver.has_permission(7, "posts.edit") is True

        await env.gateway.revoke_permission_from_role("editor", "posts.edit")

        assert await env.resolver.has_permission(7, "posts.edit") is False

    @pytest.mark.anyio
    async def test_autocommit_mode(self, make_env) -> None:
        env = make_env(Settings(performance=PerformanceSettings(use_transactions=False)))
        await env.gateway.create_role("editor")

        await env.gateway.assign_role(7, "editor")

        assert env.store.autocommit is True
        assert await env.resolver.has_role(7, "editor") is True

