"""Engine and session-factory construction for the trust-core store.

``postgresql+asyncpg://`` URLs get a pooled engine with server-side
statement and lock timeouts, so a stuck tenant lock fails the request
instead of hanging it.  ``sqlite+aiosqlite://`` URLs are delegated to
:mod:`billing_core.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_STATEMENT_TIMEOUT_MS = 30_000
_LOCK_TIMEOUT_MS = 10_000

_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def _sqlite_path(database_url: str) -> str:
    _, _, path = database_url.partition("///")
    return path or ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Build an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        SQLAlchemy URL; the scheme selects PostgreSQL or SQLite.
    pool_size, max_overflow:
        PostgreSQL pool sizing. Ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from billing_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory for *engine*, creating it once per engine."""
    factory = _session_factories.get(id(engine))
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[id(engine)] = factory
    return factory


def dialect_name(session: AsyncSession) -> str:
    """Name of the session's dialect, e.g. ``postgresql`` or ``sqlite``."""
    return str(getattr(getattr(session.get_bind(), "dialect", None), "name", ""))
