"""Async SQLAlchemy engine + session factory for the affiliate ledger.

SQLite (aiosqlite) in dev/tests, PostgreSQL (asyncpg) in production. Every
conversion and payout is a single guarded UPDATE committed on its own, so the
pool only needs to cover concurrent request handlers.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from config.settings import settings


def async_database_url(url: str) -> str:
    """Plain postgresql:// URLs get the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


_db_url = async_database_url(settings.DATABASE_URL)
_is_sqlite = _db_url.startswith("sqlite")

_engine_kwargs: dict = {
    "echo": settings.DB_ECHO,
    "future": True,
}

if not _is_sqlite:
    _engine_kwargs.update({
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # seconds
        "pool_pre_ping": True,
    })
    if settings.DATABASE_SSL:
        _engine_kwargs["connect_args"] = {"ssl": "require"}

engine = create_async_engine(_db_url, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """FastAPI dependency: one session per request."""
    async with async_session() as session:
        yield session
