"""
workqueue - Database Engine
===========================
Async SQLAlchemy engine and session factory.
"""

from functools import lru_cache

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from workqueue.core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    # SQLite has no row locks: take the write lock when the transaction begins
    # so concurrent acquirers serialize instead of reading the same row.
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        _enable_sqlite_immediate_transactions(engine)
        return engine
    settings = get_settings()
    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.app_debug)


@lru_cache()
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


async def init_db(engine: AsyncEngine | None = None, *, force: bool = False) -> None:
    """Create tables only in development. Production must use Alembic migrations."""
    settings = get_settings()
    if not force and settings.app_env.lower() != "development":
        return
    # Import models so their tables are registered on the metadata.
    import workqueue.models  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
