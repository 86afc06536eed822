"""
Database Session Management with Connection Pooling

Provides async database sessions for the monitor cycle and the API.

The engine is built lazily by init_engine() (called from the FastAPI lifespan,
the standalone scripts, or tests with their own URL) so importing this module
never opens a connection.
"""

from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from lifecycle_engine.config import settings
from lifecycle_engine.database.models import Base
import logging

logger = logging.getLogger(__name__)

engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine; pooling options apply to server databases only"""
    url = database_url or settings.DATABASE_URL
    options = {"echo": settings.DATABASE_ECHO}

    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_recycle=settings.DATABASE_POOL_RECYCLE,
            pool_pre_ping=settings.DATABASE_POOL_PRE_PING,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        )
    if url.startswith("postgresql+asyncpg"):
        options["connect_args"] = {
            "server_settings": {
                "application_name": "trade_lifecycle_engine"
            }
        }

    return create_async_engine(url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,  # snapshots are read after commit
        autoflush=False
    )


def init_engine(database_url: Optional[str] = None) -> async_sessionmaker:
    """Create the process-wide engine and session factory"""
    global engine, AsyncSessionLocal

    engine = build_engine(database_url)
    AsyncSessionLocal = build_session_factory(engine)
    logger.info(f"🗄️ Database engine initialized ({engine.url.get_backend_name()})")
    return AsyncSessionLocal


def get_session_factory() -> async_sessionmaker:
    if AsyncSessionLocal is None:
        return init_engine()
    return AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get database session (dependency injection for FastAPI)

    Usage in FastAPI routes:
        @router.get("/positions")
        async def list_positions(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise


async def init_db(bind: Optional[AsyncEngine] = None):
    """
    Create all tables

    NOTE: In production, use migrations instead of this function.
    """
    target = bind or engine
    if target is None:
        init_engine()
        target = engine

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("✅ Database initialized")


async def close_db():
    """Close database connections (cleanup on shutdown)"""
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("✅ Database connections closed")
    engine = None
    AsyncSessionLocal = None


def supports_row_locks(bind) -> bool:
    """False for dialects that ignore SELECT ... FOR UPDATE (SQLite)"""
    return bind.dialect.name != "sqlite"


async def check_db_health() -> bool:
    """
    Check database connectivity (health check endpoint)

    Returns:
        True if database is reachable, False otherwise
    """
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
