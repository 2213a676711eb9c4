"""Async engine and session factory; the URL comes from ``DB_URL``.

Production runs on asyncpg with the pgvector extension. SQLite URLs get no
pool sizing so aiosqlite works for local runs and tests.
"""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": settings.db.echo}
    return {
        "echo": settings.db.echo,
        "pool_size": settings.db.pool_size,
        "max_overflow": settings.db.max_overflow,
        "pool_pre_ping": True,
    }


engine: AsyncEngine = create_async_engine(settings.db.url, **_engine_kwargs(settings.db.url))

AsyncSessionMaker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """One session per request; closed when the response is sent."""
    async with AsyncSessionMaker() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory dependency for workers that open one session per job."""
    return AsyncSessionMaker
