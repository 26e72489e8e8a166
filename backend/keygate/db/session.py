"""SQLAlchemy async engine and session helpers for the key store."""
from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from keygate.core.config import Settings
from keygate.db.base import Base


@lru_cache
def _engine_for(database_url: str, database_echo: bool) -> AsyncEngine:
    return create_async_engine(database_url, echo=database_echo, future=True)


def get_async_engine(settings: Settings) -> AsyncEngine:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")
    return _engine_for(settings.database_url, settings.database_echo)


def get_session_maker(settings: Settings) -> async_sessionmaker:
    """Session factory bound to the configured engine.

    Sessions keep loaded attributes after commit so records can be mapped
    once the transaction is closed.
    """
    return async_sessionmaker(get_async_engine(settings), expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables on ``engine``; used when migrations are not run."""
    from keygate.db import models  # noqa: F401 -- register mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
