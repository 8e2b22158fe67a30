"""Database setup with SQLAlchemy async."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from library_sync.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

REQUIRED_TABLES = (
    "sync_checkpoints",
    "sync_runs",
    "rate_limit_state",
    "tracks",
    "artists",
    "albums",
    "playlists",
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def upsert_insert(session: AsyncSession, model: Any):
    """
    Dialect-specific INSERT supporting ``on_conflict_do_update/do_nothing``.

    PostgreSQL in production, SQLite in tests.
    """
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_db_ready() -> None:
    """
    Verify database connectivity and expected schema.

    Checks that the sync bookkeeping and library tables exist.
    """
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            raise RuntimeError(
                f"Database schema is missing tables: {', '.join(missing)} "
                "(run database init or check migrations)."
            )
