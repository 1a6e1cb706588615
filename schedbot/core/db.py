from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from schedbot.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_SUPPORTED_DRIVERS = ("sqlite+aiosqlite", "postgresql+asyncpg")

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _preflight_database_backend(url: str) -> str:
    try:
        parsed = make_url(url)
    except ArgumentError as exc:  # pragma: no cover - configuration guard
        raise RuntimeError(f"Invalid DATABASE_URL: {exc}") from exc

    driver = (parsed.drivername or "").lower()
    masked_url = parsed.render_as_string(hide_password=True)
    logger.info("Database dialect: %s (%s)", driver or "unknown", masked_url)

    if driver not in _SUPPORTED_DRIVERS:
        raise RuntimeError(
            f"Unsupported database driver: {driver}. "
            f"Use one of: {', '.join(_SUPPORTED_DRIVERS)}"
        )
    return driver


def create_engine_for(url: str, settings: Optional[Settings] = None) -> AsyncEngine:
    """Build an async engine for ``url`` with pool settings matching its dialect."""

    settings = settings or get_settings()
    driver = _preflight_database_backend(url)
    kwargs: Dict[str, Any] = {"echo": settings.sql_echo}

    if driver.startswith("sqlite"):
        database = make_url(url).database or ""
        if database in {"", ":memory:"}:
            # every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
            pool_recycle=settings.db_pool_recycle,
        )
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


def configure_database(url: Optional[str] = None, settings: Optional[Settings] = None) -> AsyncEngine:
    """Create the process-wide engine and session factory."""

    global _engine, _session_factory
    settings = settings or get_settings()
    _engine = create_engine_for(url or settings.database_url, settings)
    _session_factory = make_session_factory(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database is not configured")
    return _session_factory


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""

    from schedbot.domain.base import Base
    from schedbot.domain import models  # noqa: F401

    target = engine or _engine
    if target is None:
        raise RuntimeError("Database is not configured")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def async_session() -> AsyncIterator[AsyncSession]:
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "async_session",
    "configure_database",
    "create_engine_for",
    "dispose_engine",
    "get_session_factory",
    "init_models",
    "make_session_factory",
]
