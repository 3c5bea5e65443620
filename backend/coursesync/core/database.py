from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import MetaData, event
from typing import AsyncGenerator, Optional
import logging

from coursesync.core.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    metadata = MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s"
        }
    )


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Let a writer wait for the lock instead of failing with 'database is locked'."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {int(settings.SQLITE_BUSY_TIMEOUT_MS)}")
        cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


def configure_engine(engine: AsyncEngine) -> AsyncEngine:
    """Apply per-connection settings for the engine's dialect."""
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
        logger.debug(f"SQLite busy timeout set to {settings.SQLITE_BUSY_TIMEOUT_MS}ms")
    return engine


def create_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    return configure_engine(create_async_engine(
        url or settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO if echo is None else echo,
        future=True
    ))


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # Sessions outlive their commits in the run executor, keep loaded state
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False
    )


engine = create_engine()

AsyncSessionLocal = create_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None):
    # Import models so every table is registered on the metadata
    import coursesync.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
