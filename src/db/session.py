"""Async engine and session factory."""
from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.core.config import settings


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create the engine lazily so tests can swap ``DATABASE_URI`` first."""

    return create_async_engine(
        str(settings.DATABASE_URI),
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)
