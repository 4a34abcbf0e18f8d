"""
Engine and session management.

One process-wide engine and session factory, created lazily from settings.
Sessions never expire loaded rows on commit: services commit their own
units of work and keep using the rows afterwards.

PostgreSQL (asyncpg) is the production target; SQLite (aiosqlite) backs
local runs and tests. Production schemas are managed by Alembic, so
``init_db`` only creates tables outside production.
"""
from collections.abc import AsyncGenerator
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from commission_engine.config import Settings, get_settings
from commission_engine.database.models import Base
from commission_engine.database.upsert import SUPPORTED_DIALECTS

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an async engine with dialect-appropriate options.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: new engine

    Raises:
        ValueError: If the URL names an unsupported database
    """
    backend = make_url(settings.database_url).get_backend_name()
    if backend not in SUPPORTED_DIALECTS:
        raise ValueError(f"Unsupported database {backend!r}; expected one of {SUPPORTED_DIALECTS}")

    kwargs: dict[str, Any] = {"echo": settings.database_echo}
    if backend == "sqlite":
        # Concurrent writers wait on the file lock instead of failing
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={"server_settings": {"application_name": settings.app_name}},
        )
    return create_async_engine(settings.database_url, **kwargs)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding a request-scoped session.

    Services commit their own units of work; anything left open when the
    request ends is rolled back.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.rollback()


async def init_db() -> None:
    """
    Prepare the database at startup.

    Creates missing tables in development and test; in production only
    checks connectivity, since Alembic owns the schema.
    """
    settings = get_settings()
    engine = get_engine()
    async with engine.begin() as conn:
        if settings.is_production:
            await conn.execute(text("SELECT 1"))
        else:
            await conn.run_sync(Base.metadata.create_all)
    logger.info("database_ready", dialect=engine.dialect.name, created_tables=not settings.is_production)


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
