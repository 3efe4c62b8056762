"""Alembic environment configuration for embedsync.

Runs migrations through SQLAlchemy's async engine (asyncpg driver) using the
database URL from EmbedsyncConfig. Only the queue's own tables are managed
here; the content tables read by SqlContentSource belong to the CRUD
application and are never migrated from this project.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from embedsync.config import load_config
from embedsync.database.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# EMBEDSYNC_DATABASE__URL or embedsync.toml wins over alembic.ini
embedsync_config = load_config()
config.set_main_option("sqlalchemy.url", embedsync_config.database.url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit migration SQL without connecting to the database."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Connect with an async engine and run pending migrations."""
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
