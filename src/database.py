"""Async engine, session factory and schema bootstrap for the queue store."""

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from src.config import settings

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite+aiosqlite:///"


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _prepare_sqlite_file(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    path = database_url.removeprefix(SQLITE_PREFIX)
    if not database_url.startswith(SQLITE_PREFIX) or path in ("", ":memory:"):
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def _build_engine(database_url: str):
    if not is_sqlite(database_url):
        return create_async_engine(database_url, echo=settings.debug)

    _prepare_sqlite_file(database_url)
    sqlite_engine = create_async_engine(
        database_url,
        echo=settings.debug,
        connect_args={"timeout": settings.db_busy_timeout_seconds},
    )
    busy_ms = int(settings.db_busy_timeout_seconds * 1000)

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        # WAL lets the processor read while request handlers enqueue.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={busy_ms};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return sqlite_engine


engine = _build_engine(settings.database_url)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session() as session:
        yield session


async def init_db() -> None:
    # Mapped tables must be imported before create_all sees them.
    import src.models.issue  # noqa: F401
    import src.models.notification_queue  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", engine.url.get_backend_name())


async def close_db() -> None:
    await engine.dispose()
