"""Server-side session verification cache.

Remembers "tenant X was entitled at time T" per session for a bounded TTL so
the gate can skip the database on hot paths.  It is an optimisation only: a
miss, an expired entry or a tenant mismatch always falls back to a fresh
evaluation, and entries are revoked as soon as a tenant loses entitlement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from billing_core.clock import Clock, utcnow
from billing_core.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=30)


@dataclass(frozen=True)
class CachedVerification:
    tenant_id: str
    status: SubscriptionStatus
    verified_at: datetime


class SessionVerificationCache:
    """TTL cache of positive entitlement verdicts keyed by session.

    Parameters
    ----------
    ttl:
        How long an entry stays valid (default: 30 minutes).
    clock:
        Time source, injectable for tests.
    max_entries:
        Hard cap on cache size.  When reached, expired entries are purged
        first and then the least recently stored entries are evicted.

    Every :meth:`invalidate_tenant` call bumps a per-tenant generation.  A
    caller that reads the tenant from the database passes the generation it
    saw beforehand to :meth:`put`; if the tenant was invalidated in between,
    the now-stale verdict is not stored.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Clock = utcnow,
        max_entries: int = 50_000,
    ) -> None:
        self._entries: dict[str, CachedVerification] = {}
        self._generations: dict[str, int] = {}
        self._ttl = ttl
        self._clock = clock
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, session_key: str, tenant_id: str) -> CachedVerification | None:
        """Return the entry if it is fresh and belongs to *tenant_id*."""
        entry = self._entries.get(session_key)
        if entry is None:
            return None
        if entry.tenant_id != tenant_id:
            # Session switched tenant: the verdict does not carry over.
            del self._entries[session_key]
            return None
        if self._clock() - entry.verified_at >= self._ttl:
            del self._entries[session_key]
            return None
        return entry

    def generation(self, tenant_id: str) -> int:
        """Current invalidation generation for *tenant_id*."""
        return self._generations.get(tenant_id, 0)

    def put(
        self,
        session_key: str,
        tenant_id: str,
        status: SubscriptionStatus,
        *,
        generation: int | None = None,
    ) -> bool:
        """Store a positive verdict; returns ``False`` if it was discarded.

        With *generation* set, the entry is only stored when no
        :meth:`invalidate_tenant` for the tenant happened since that
        generation was read.
        """
        if generation is not None and generation != self.generation(tenant_id):
            logger.debug("Discarding stale verdict for tenant=%s (invalidated during check)", tenant_id)
            return False

        # Re-inserting moves the key to the end, so dict order is store order.
        self._entries.pop(session_key, None)
        if len(self._entries) >= self._max_entries:
            self.purge_expired()
            while self._entries and len(self._entries) >= self._max_entries:
                del self._entries[next(iter(self._entries))]
        self._entries[session_key] = CachedVerification(
            tenant_id=tenant_id,
            status=status,
            verified_at=self._clock(),
        )
        return True

    def invalidate(self, session_key: str) -> None:
        self._entries.pop(session_key, None)

    def invalidate_tenant(self, tenant_id: str) -> int:
        """Drop every entry for *tenant_id*; returns how many were removed."""
        self._generations[tenant_id] = self.generation(tenant_id) + 1
        stale = [key for key, entry in self._entries.items() if entry.tenant_id == tenant_id]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if now - entry.verified_at >= self._ttl]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
