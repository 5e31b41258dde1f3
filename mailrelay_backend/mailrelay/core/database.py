"""
Database configuration and session management

Pool configuration depends on the driver:
- asyncpg (production): sized pool with pre-ping
- aiosqlite (development/tests): NullPool, every session gets its own connection
"""
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from mailrelay.core.config import settings

Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with a pool suited to the database driver."""
    pool_config = {}

    if database_url.startswith("sqlite"):
        pool_config = {"poolclass": NullPool}
    elif settings.ENVIRONMENT == "production":
        pool_config = {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,  # Verify connections before use
        }
    else:
        pool_config = {
            "pool_size": 2,
            "max_overflow": 5,
            "pool_pre_ping": True,
        }

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        **pool_config,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

AsyncSessionLocal = build_session_factory(engine)


async def create_all(bind: AsyncEngine = None) -> None:
    """Create all tables (development and tests; production uses migrations)."""
    # Import models to register them with the metadata
    from mailrelay import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    """Dependency for getting async database sessions"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session(session_factory: async_sessionmaker = None):
    """
    Context manager for database sessions outside FastAPI request context.

    Used by every store operation: one short session per operation,
    committed on exit, rolled back on error.

    Usage:
        async with get_db_session() as db:
            result = await db.execute(...)
    """
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
