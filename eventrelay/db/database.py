"""
Database engine and sessions

Three kinds of callers:
- API requests: `get_db` dependency on the process-wide engine
- worker handlers: one `AsyncSessionLocal()` per invocation
- Celery maintenance tasks: `get_task_session`, a throwaway engine per task
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from eventrelay.core.config import settings

Base = declarative_base()


def build_engine(**kwargs) -> AsyncEngine:
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        **kwargs
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # rows are re-read after every conditional UPDATE, never refreshed on commit
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create missing tables. Importing the models registers them on Base."""
    from eventrelay.db import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Session for a Celery task.

    Each task runs on its own event loop; asyncpg connections cannot cross
    loops, so the task gets an unpooled engine that is disposed with it.
    """
    task_engine = build_engine(poolclass=NullPool)
    try:
        async with build_session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
