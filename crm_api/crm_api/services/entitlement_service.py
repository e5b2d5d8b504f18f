"""Entitlement checks backed by the session verification cache.

Order of evaluation for a request:

1. A fresh cached verdict for the same session and tenant short-circuits to
   "allow" without touching the database.
2. Otherwise the tenant row is read, the decision table is evaluated and its
   ``cache_action`` is applied to the caller's cache entry.
"""

from __future__ import annotations

import logging

from billing_core.clock import Clock, utcnow
from billing_core.entitlement.cache import SessionVerificationCache
from billing_core.entitlement.gate import (
    AllowReason,
    CacheAction,
    EntitlementDecision,
    evaluate,
    is_grace_period_active,
)
from billing_core.models.roles import Role
from billing_core.state.repository import TenantRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_api.schemas import EntitlementResponse

logger = logging.getLogger(__name__)


class EntitlementService:
    """Evaluate the gate for one caller, using and maintaining the cache.

    Parameters
    ----------
    session_factory:
        Factory used for the tenant lookup on a cache miss.
    cache:
        Shared session verification cache.
    clock:
        Time source for the grace-window comparison.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: SessionVerificationCache,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._clock = clock

    async def check(
        self,
        *,
        tenant_id: str | None,
        role: Role | None,
        session_key: str | None,
        requires_subscription: bool = True,
    ) -> EntitlementDecision:
        """Return the entitlement decision for the caller.

        Parameters
        ----------
        tenant_id:
            Authenticated tenant; ``None`` means unauthenticated.
        role:
            Caller role.
        session_key:
            Cache key for the caller's session (token ``jti``); ``None``
            disables caching for this call.
        requires_subscription:
            Whether the resource is gated on an active subscription.
        """
        authenticated = tenant_id is not None
        if not authenticated or role is Role.SUPER_ADMIN or not requires_subscription:
            decision = evaluate(
                authenticated=authenticated,
                role=role,
                status=None,
                grace_period_active=False,
                requires_subscription=requires_subscription,
            )
            self._apply_cache_action(decision, session_key, tenant_id)
            return decision

        if session_key is not None:
            cached = self._cache.get(session_key, tenant_id)
            if cached is not None:
                logger.debug("Entitlement cache hit for tenant=%s", tenant_id)
                return EntitlementDecision(
                    allowed=True,
                    reason=AllowReason.ENTITLED.value,
                    cache_action=CacheAction.KEEP,
                    status=cached.status,
                )

        # Taken before the lookup: an invalidate_tenant during the read turns
        # the cache refresh below into a no-op.
        generation = self._cache.generation(tenant_id)
        async with self._session_factory() as session:
            tenant = await TenantRepository(session).get(tenant_id)

        status = tenant.subscription_status if tenant is not None else None
        grace_ends = tenant.grace_period_ends_at if tenant is not None else None
        decision = evaluate(
            authenticated=True,
            role=role,
            status=status,
            grace_period_active=is_grace_period_active(status, grace_ends, self._clock()),
            requires_subscription=requires_subscription,
        )
        if not decision.allowed:
            logger.info("Entitlement denied for tenant=%s: %s", tenant_id, decision.reason)
        self._apply_cache_action(decision, session_key, tenant_id, generation=generation)
        return decision

    def _apply_cache_action(
        self,
        decision: EntitlementDecision,
        session_key: str | None,
        tenant_id: str | None,
        *,
        generation: int | None = None,
    ) -> None:
        if session_key is None:
            return
        if decision.cache_action is CacheAction.REFRESH and tenant_id is not None and decision.status is not None:
            self._cache.put(session_key, tenant_id, decision.status, generation=generation)
        elif decision.cache_action is CacheAction.INVALIDATE:
            self._cache.invalidate(session_key)


def decision_response(decision: EntitlementDecision) -> EntitlementResponse:
    return EntitlementResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        redirect=decision.redirect.value if decision.redirect else None,
        status=decision.status.value if decision.status else None,
    )
