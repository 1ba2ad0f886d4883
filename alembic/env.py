"""Alembic migration environment for ListingMatch.

The database URL always comes from LISTINGMATCH_DATABASE_URL via the
Settings object, so migrations and the running service cannot diverge.
Postgres (asyncpg) is the production target; a sqlite+aiosqlite URL also
works for local runs, with batch mode switched on so column changes are
rewritten as table copies.  Embeddings are plain JSON columns, so no
database extension has to be created first.

References:
- https://alembic.sqlalchemy.org/en/latest/cookbook.html#using-asyncio-with-alembic
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

# Alembic config object: gives access to alembic.ini values
config = context.config

# Set up logging from alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Import ORM models so Alembic autogenerate knows the target schema
from listingmatch.db.models import Base  # noqa: E402

target_metadata = Base.metadata

# The sqlalchemy.url in alembic.ini is only a placeholder
from listingmatch.config import settings  # noqa: E402

config.set_main_option("sqlalchemy.url", settings.database_url)


def do_run_migrations(connection: Connection) -> None:
    """Execute migrations against a live connection.

    Batch mode is enabled on SQLite so ALTER-style operations work there too.
    """
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Create an async engine and run migrations online.

    Uses NullPool so connections are not pooled during migrations: each
    migration command gets a fresh connection and releases it immediately.
    """
    connectable = create_async_engine(
        settings.database_url,
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (SQL script generation).

    Emits SQL to stdout instead of connecting to a database.  Useful for
    generating migration scripts to review before running.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (direct database connection).

    Uses asyncio.run() to execute the async migration function.
    """
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
