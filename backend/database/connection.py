from functools import lru_cache
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import inspect, text

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the async engine from settings on first use."""
    settings = get_settings()
    database_url = settings.get_database_url()

    engine_kwargs = {"echo": False, "pool_pre_ping": True}
    if database_url.startswith("postgresql"):
        engine_kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
        if settings.POSTGRES_SSLMODE == "require":
            engine_kwargs["connect_args"] = {"ssl": "require"}

    return create_async_engine(database_url, **engine_kwargs)


@lru_cache()
def get_session_factory() -> async_sessionmaker:
    """Session factory bound to the shared engine"""
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def get_db():
    """Dependency to get database session"""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Initialize database connection and verify tables exist"""
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            table_names = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_table_names()
            )
            missing = sorted(set(Base.metadata.tables) - set(table_names))
            if missing:
                logger.warning(f"Reconciliation tables missing: {missing}")
            else:
                logger.info(f"Available tables: {sorted(table_names)}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
