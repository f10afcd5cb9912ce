"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

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


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Session factory bound to a fresh engine, for Celery tasks.

    Each task runs in its own event loop, and the module-level engine's pool
    is attached to whichever loop created it. The worker pool opens one
    session per job, so it needs a factory rather than a single session.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=settings.WEBHOOK_WORKER_CONCURRENCY + 1,
        max_overflow=5
    )
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()
