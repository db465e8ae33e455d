"""Async SQLAlchemy engine and session helpers.

Exports:
  get_engine        -- the shared AsyncEngine for a database URL
  get_sessionmaker  -- async_sessionmaker bound to that engine
  get_db_context    -- async context manager yielding an AsyncSession

Without an explicit URL the configured ``DATAFORK_DATABASE_URL`` is used.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings


@lru_cache
def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(database_url or get_settings().database_url, echo=False, pool_pre_ping=True)


@lru_cache
def get_sessionmaker(database_url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(database_url), class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_db_context(database_url: Optional[str] = None) -> AsyncIterator[AsyncSession]:
    """Yield a session for work outside a request (startup, background tasks).

    Rolls back the open transaction on any exception, then re-raises.
    """
    async with get_sessionmaker(database_url)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
