from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from settings.config import settings
from db.models import Base
from auth.tables import UserTable  # noqa: F401  users live on the same metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Ingestion tables are hot; a migration waiting on a row lock gives up instead of stalling callbacks.
LOCK_TIMEOUT = "5s"

# Partial / expression indexes are written by hand in the revisions; autogenerate leaves them alone.
HAND_WRITTEN_INDEXES = frozenset({"ux_companies_org_identifier", "ix_files_in_flight", "ix_dispatch_outbox_pending"})


def migration_dsn() -> str:
    """`alembic -x dsn=postgresql+asyncpg://...` wins; pgbouncer is never used for DDL."""
    return context.get_x_argument(as_dictionary=True).get("dsn") or settings.POSTGRES_DSN


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    return not (type_ in ("index", "unique_constraint") and name in HAND_WRITTEN_INDEXES)


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        include_object=include_object,
        transaction_per_migration=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=migration_dsn(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_with_connection(connection: Connection) -> None:
    connection.execute(text(f"SET lock_timeout = '{LOCK_TIMEOUT}'"))
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(migration_dsn(), poolclass=pool.NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(run_with_connection)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
