# infrastructure/database/base.py
"""
🗄️ DATABASE ENGINE

One async engine per process plus the session factory used by
repositories and FastAPI dependencies.

PostgreSQL in production (asyncpg), SQLite for development and tests
(aiosqlite).
"""

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

import structlog

from config.settings import config

logger = structlog.get_logger()


# Base: every model inherits from it
Base = declarative_base()


# ==========================================
# SQLITE: real BEGIN / SAVEPOINT
# ==========================================

def enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself on SQLite.

    The sqlite3 driver starts transactions lazily, which breaks
    SAVEPOINT (session.begin_nested()) used by the repositories.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


# ==========================================
# ENGINE + SESSION FACTORY
# ==========================================

engine = create_async_engine(
    config.async_database_url,
    echo=config.database_echo,
    pool_pre_ping=not config.async_database_url.startswith("sqlite"),
)

if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ==========================================
# FASTAPI DEPENDENCY
# ==========================================

async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Give each request its own session.

    Example:
        @router.get("/orders/{order_id}")
        async def get_order(order_id: str, session: AsyncSession = Depends(get_db_session)):
            ...
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ==========================================
# LIFECYCLE
# ==========================================

async def init_db():
    """Create the tables if they do not exist yet."""
    # models must be imported so their tables are registered on Base
    from infrastructure.database import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("database_tables_ready", url=config.async_database_url.split("@")[-1])


async def close_db():
    """Dispose the connection pool."""
    await engine.dispose()
