"""Database engine and session management."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import Settings
from database.models import Base


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the database engine for the configured URL.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    url = make_url(settings.database_url)
    kwargs: Dict[str, Any] = {"echo": settings.database_echo}

    if url.get_backend_name() == "sqlite":
        # Writers wait for each other instead of failing with "database is locked"
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )

    engine = create_async_engine(settings.database_url, **kwargs)

    if url.get_backend_name() == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_wal(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to an engine.

    Args:
        engine: Database engine

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """
    Provide a unit of work: commit on success, roll back on error.

    Example:
        async with session_scope(session_factory) as db:
            await ledger.mark_fee_paid(db, phone)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections and dispose of the engine."""
    await engine.dispose()
