import logging

import pytest
from sqlalchemy import inspect

from rolegate.config import Settings
from rolegate.database import build_engine, build_session_factory, create_schema
from rolegate.log_config import configure_logging


@pytest.mark.anyio
async def test_create_schema_builds_grant_tables(tmp_path) -> None:
    engine = build_engine(Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'rolegate.db'}"))
    try:
        await create_schema(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    finally:
        await engine.dispose()

    assert {
        "roles",
        "permissions",
        "role_permissions",
        "principal_roles",
        "principal_permissions",
    } <= tables


@pytest.mark.anyio
async def test_session_factory_keeps_objects_after_commit() -> None:
    engine = build_engine(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    factory = build_session_factory(engine)
    try:
        assert factory.kw["expire_on_commit"] is False
    finally:
        await engine.dispose()


def test_configure_logging_sets_package_level() -> None:
    logger = configure_logging(Settings(log_level="DEBUG"))

    assert logger.name == "rolegate"
    assert logger.level == logging.DEBUG


def test_configure_logging_unknown_level_falls_back_to_info() -> None:
    logger = configure_logging(Settings(log_level="CHATTY"))

    assert logger.level == logging.INFO
