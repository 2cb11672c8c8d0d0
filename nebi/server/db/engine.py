"""Async SQLAlchemy engine and session factory.

Uses psycopg3, which serves both the async application and the sync
Alembic migrations from the same ``postgresql+psycopg://`` URL.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

_DIALECT_ALIASES = (
    "postgresql+asyncpg://",
    "postgresql://",
    "postgres://",
)


def normalize_dsn(dsn: str) -> str:
    """Rewrite plain or asyncpg PostgreSQL URLs to the psycopg3 dialect."""
    for prefix in _DIALECT_ALIASES:
        if dsn.startswith(prefix):
            return "postgresql+psycopg://" + dsn[len(prefix) :]
    return dsn


def create_engine(dsn: str, **kwargs: object) -> AsyncEngine:
    """Create an async SQLAlchemy engine for *dsn*.

    Pool defaults: ``pool_size=5``, ``max_overflow=10`` (API handlers plus
    up to ``max_workers`` job handlers and their log-flush tasks share the
    pool), ``pool_pre_ping`` to survive server restarts and
    ``pool_recycle=3600``.  All defaults can be overridden via *kwargs*.
    """
    defaults = {
        "echo": False,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }
    defaults.update(kwargs)  # type: ignore[arg-type]
    return create_async_engine(normalize_dsn(dsn), **defaults)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*.

    ``expire_on_commit=False`` keeps ORM instances usable after commit
    without lazy loads, which async code cannot perform implicitly.
    """
    return async_sessionmaker(engine, expire_on_commit=False)
