# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg) shared by the API and the Celery
# workers. FastAPI handlers get a session per request through
# `get_async_session`; repositories and workers open their own sessions
# from `async_session_factory` and commit explicitly.
#
# CELERY WORKERS:
# Each job runs inside its own `asyncio.run(...)` loop. asyncpg connections
# are bound to the loop that opened them, so the task disposes the pool
# (`dispose_engine`) before its loop closes.
# =============================================================================

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from thesis_validator.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo: logs SQL in debug mode
# - pool_size / max_overflow: sized for a handful of concurrent jobs
# - pool_pre_ping: drops connections the server closed between jobs
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
)

# expire_on_commit=False: loaded rows stay readable after commit
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session commits when the handler returns and rolls back if it
    raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close pooled connections (called at the end of every worker job)."""
    await async_engine.dispose()
