from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from .settings import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


# API process: one long-lived loop, pooled connections checked before reuse
engine = create_async_engine(
    settings.async_database_url,
    future=True,
    echo=False,
    pool_pre_ping=True,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_task_engine(database_url: str | None = None) -> AsyncEngine:
    """Engine for a single Celery task.

    Each task runs in its own asyncio.run() loop, and asyncpg connections are
    bound to the loop that opened them, so nothing is pooled across tasks.
    Dispose the engine when the task ends.
    """
    return create_async_engine(database_url or settings.async_database_url, echo=False, poolclass=NullPool)


def task_session_factory(task_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session
