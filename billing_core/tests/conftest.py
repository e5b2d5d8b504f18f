"""Shared fixtures for trust-core tests.

Tests run against a file-backed SQLite database (via aiosqlite) so several
sessions can observe each other's commits, which the concurrency tests
rely on.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from billing_core.state.database import get_engine
from billing_core.state.sqlite_adapter import create_local_tables
from billing_core.state.tables import TenantTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Provide an engine on a fresh SQLite file with all tables created."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
def make_tenant(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    """Return a coroutine function that inserts a tenant row."""

    async def _make(tenant_id: str, **fields: Any) -> None:
        fields.setdefault("name", f"Clinic {tenant_id}")
        fields.setdefault("subscription_status", "trial")
        async with session_factory() as session:
            session.add(TenantTable(id=tenant_id, **fields))
            await session.commit()

    return _make


@pytest.fixture()
def load_tenant(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[str], Awaitable[TenantTable | None]]:
    async def _load(tenant_id: str) -> TenantTable | None:
        async with session_factory() as session:
            return await session.get(TenantTable, tenant_id)

    return _load
