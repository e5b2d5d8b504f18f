"""Per-tenant mutual exclusion for read-modify-write sections.

Credential rotation, the grace-period sweep and subscription transitions all
read a tenant row and write it back.  Inside one process they are serialised
by an ``asyncio.Lock`` per tenant; across processes the repositories also take
a ``SELECT ... FOR UPDATE`` row lock on PostgreSQL.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class TenantLockRegistry:
    """Lazily created ``asyncio.Lock`` objects keyed by tenant id.

    Entries are dropped once no coroutine holds or awaits them, so the
    registry does not grow with the number of tenants ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        """Hold the lock for *tenant_id* for the duration of the block."""
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        self._users[tenant_id] = self._users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[tenant_id] - 1
            if remaining:
                self._users[tenant_id] = remaining
            else:
                del self._users[tenant_id]
                del self._locks[tenant_id]
