"""Async engine, session factory and table lifecycle.

::
    request handler ──Depends(get_db)──▶ one AsyncSession per request
    counter store, range ledger,
    click flusher, expiry sweeper   ──▶ short-lived sessions from async_session()

Key Behaviours
===============
- ``expire_on_commit=False``: entries stay readable after the registry commits.
- ``DATABASE_ERRORS`` is what "the database is unavailable" looks like.
  SQLAlchemy wraps driver errors, but asyncpg surfaces a refused or dropped
  connection as a plain ``OSError``.
- ``init_db()`` creates missing tables; there is no migration step.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from shortener.config import get_settings

__all__ = ["DATABASE_ERRORS", "Base", "async_session", "close_db", "engine", "get_db", "init_db"]

DATABASE_ERRORS = (SQLAlchemyError, OSError)

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


async def init_db() -> None:
    # Tables are registered on Base.metadata when the models module is imported.
    import shortener.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
