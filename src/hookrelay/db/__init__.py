"""hookrelay database module.

- SQLAlchemy 2.x async engine and session factory
- ORM models for job records, webhook subscriptions and deliveries
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from hookrelay.core.config import DatabaseSettings

# Module-level engine and session factory (initialized on first use)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url(database: DatabaseSettings) -> str:
    """Get the async-driver database URL from settings.

    Args:
        database: Database settings group.

    Returns:
        PostgreSQL connection URL for the asyncpg driver.
    """
    url = str(database.url)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def get_session_factory(database: DatabaseSettings | None = None) -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating the engine if needed.

    Args:
        database: Database settings; loaded from the environment when omitted.

    Returns:
        Session factory bound to the shared engine.
    """
    global _engine, _async_session_factory

    if _async_session_factory is not None:
        return _async_session_factory

    if database is None:
        from hookrelay.core.settings import get_settings

        database = get_settings().database

    _engine = create_async_engine(
        get_database_url(database),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        pool_pre_ping=True,
        echo=database.echo,
    )
    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _async_session_factory


async def create_tables() -> None:
    """Create all ORM tables on the shared engine (development helper)."""
    from hookrelay.db.models import Base

    get_session_factory()
    if _engine is None:
        msg = "Database engine not initialized"
        raise RuntimeError(msg)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_engine() -> None:
    """Close the database engine.

    Call this during application shutdown to clean up connections.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
