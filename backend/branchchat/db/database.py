"""
Database connection and session management using SQLAlchemy async over SQLite.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from branchchat.core.config import settings


logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create the async engine for the local database.

    Args:
        database_url: SQLAlchemy URL, defaults to settings.DATABASE_URL
        echo: Log SQL queries, defaults to settings.DEBUG

    Returns:
        AsyncEngine with SQLite pragmas applied on every connection
    """
    url = make_url(database_url or settings.DATABASE_URL)

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        url,
        echo=settings.DEBUG if echo is None else echo,
        future=True,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if url.database and url.database != ":memory:":
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    logger.info("Database engine created: %s", url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the async session factory bound to an engine.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize database - create all tables.
    This should be called on application startup.
    """
    # Import all models here to ensure they are registered
    from branchchat.models import conversation, message, settings as settings_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
