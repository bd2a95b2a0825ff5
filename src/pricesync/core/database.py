"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for all sync and catalog tables
- get_session(): AsyncSession generator used by repositories
- session_scope(): share one caller-owned transaction across repositories
- init_db() / close_db(): lifespan hooks
- utcnow() / as_utc(): timezone helpers shared by the persistence layer
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.pricesync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all pricesync models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the module engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


def make_session_factory(engine: AsyncEngine):
    """Build a session generator bound to an explicit engine.

    Used by the standalone worker, scripts and tests that manage their
    own engine instead of the module singleton.
    """

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


@asynccontextmanager
async def session_scope(
    session_factory: SessionFactory, session: AsyncSession | None = None
) -> AsyncIterator[AsyncSession]:
    """Reuse a caller's session or open (and always close) a fresh one.

    Repositories accept an optional session so several writes can share
    one transaction; the owner of the session is the one that commits.
    """
    if session is not None:
        yield session
        return
    gen = session_factory()
    own = await gen.__anext__()
    try:
        yield own
    finally:
        await gen.aclose()


# ── Time helpers ────────────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from drivers without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create all tables if they don't exist.

    Production deployments run Alembic migrations; this keeps local
    development and the SQLite test database usable without them.
    """
    # Import models so they register on Base.metadata
    import src.pricesync.sync.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db() -> None:
    """Run a trivial query; raises if the database is unreachable."""
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
