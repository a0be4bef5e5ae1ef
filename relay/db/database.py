"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from relay.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request"""
    async with AsyncSessionLocal() as session:
        yield session


def _create_task_engine() -> AsyncEngine:
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=settings.DISPATCH_CONCURRENCY + 2,
        max_overflow=5
    )


@asynccontextmanager
async def get_task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Session factory bound to the current event loop, for Celery tasks.

    Each Celery task runs on its own loop, so the module-level engine cannot be
    reused ("attached to a different loop"). The worker pool opens one session
    per leased row, hence a factory rather than a single session. The engine is
    disposed when the block exits.
    """
    task_engine = _create_task_engine()
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Single loop-bound session for Celery tasks that need only one."""
    async with get_task_session_factory() as factory:
        async with factory() as session:
            yield session
