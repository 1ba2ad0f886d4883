"""Async database engine and session factory for ListingMatch.

Usage:
    from listingmatch.db.session import build_engine, build_session_factory

    engine = build_engine()
    factory = build_session_factory(engine)
    async with factory() as session:
        result = await session.execute(select(Listing))

The hosting process (API lifespan or CLI command) builds the engine once and
disposes it on shutdown; nothing here is created at import time.

IMPORTANT: Each request/operation must get its own session from the factory.
AsyncSession is NOT safe to share across concurrent coroutines or requests.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def build_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async engine for *database_url* (defaults to settings).

    PostgreSQL engines get a bounded pool and an asyncpg command timeout so
    no query can block a scan indefinitely.  SQLite (tests) takes the
    driver defaults.
    """
    from listingmatch.config import settings  # noqa: PLC0415

    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        connect_args={"command_timeout": settings.db_command_timeout_seconds},
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; expire_on_commit=False keeps ORM objects usable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)
