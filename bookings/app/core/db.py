"""Async SQLAlchemy database helpers.

Single authoritative module providing:
    * get_engine / get_session / get_session_factory
    * init_db(force=..., on_create=...)
    * _reset_engine_for_tests (used in test isolation)
    * ping (connectivity probe used by the health endpoint)

Services never reach for this module implicitly; they receive a session
factory in their constructor. ``get_session_factory`` is what the API and
workers hand them by default.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..domain.models import Base
from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)


# =====================================================
# ENV + Static configuration
# =====================================================
DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_URL = "postgresql+asyncpg://app_user:change_me@db:5432/bookings"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


# =====================================================
# Engine / Session factory
# =====================================================
def _make_engine(url: str) -> AsyncEngine:
    """Create an async engine."""
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        url = os.getenv(DATABASE_URL_ENV, DEFAULT_URL)
        _engine = _make_engine(url)
        _session_factory = make_session_factory(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide a new AsyncSession."""
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        await session.close()


# =====================================================
# DB Init / Reset helpers
# =====================================================
async def init_db(
    force: bool = False,
    on_create: Callable[[AsyncEngine], None] | None = None,
    engine: AsyncEngine | None = None,
) -> None:
    """Create database schema."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        if force:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    if on_create:
        on_create(engine)


def _reset_engine_for_tests() -> None:
    """Reset engine references (fast, synchronous)."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None


# =====================================================
# Health
# =====================================================
async def ping(session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    """Run a trivial query; raise StoreUnavailableError when the database is unreachable."""
    factory = session_factory or get_session_factory()
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
    except (OperationalError, OSError) as e:
        logger.warning("Database ping failed: %s", e)
        raise StoreUnavailableError("database unavailable") from e


__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "make_session_factory",
    "init_db",
    "_reset_engine_for_tests",
    "ping",
]
