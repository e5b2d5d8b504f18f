"""Transactional application of billing events to tenants.

For each event the processor resolves the tenant, takes that tenant's lock,
and inside **one** database transaction claims the event in the ledger,
reads the tenant row ``FOR UPDATE``, applies :func:`transition` and commits.
If anything fails the claim is rolled back with the status write, so the
event is never marked processed without its effect.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Protocol

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.audit import record_audit
from billing_core.clock import Clock, utcnow
from billing_core.errors import NotFound
from billing_core.ledger.event_ledger import EventLedger
from billing_core.models.events import BillingEvent
from billing_core.models.subscription import SubscriptionStatus
from billing_core.state.locks import TenantLockRegistry
from billing_core.state.repository import TenantRepository
from billing_core.subscription.state_machine import TenantSnapshot, transition

logger = logging.getLogger(__name__)

_DEFAULT_GRACE_PERIOD = timedelta(days=7)


class TenantCacheInvalidator(Protocol):
    """Anything that can drop cached entitlement verdicts for a tenant."""

    def invalidate_tenant(self, tenant_id: str) -> int: ...


class ProcessingStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_TENANT = "unknown_tenant"


class ProcessingOutcome(BaseModel):
    """What happened to one webhook event."""

    status: ProcessingStatus
    event_id: str
    event_type: str
    tenant_id: str | None = None
    new_status: SubscriptionStatus | None = None
    reason: str | None = None


class SubscriptionProcessor:
    """Apply verified billing events to tenant subscription state.

    Parameters
    ----------
    session_factory:
        Factory for the per-event transaction.
    locks:
        Per-tenant lock registry shared with the credential vault.
    cache:
        Optional entitlement cache to invalidate on loss of entitlement.
    clock:
        Time source, injectable for tests.
    grace_period:
        past_due grace window started by a failed payment.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        locks: TenantLockRegistry | None = None,
        cache: TenantCacheInvalidator | None = None,
        clock: Clock = utcnow,
        grace_period: timedelta = _DEFAULT_GRACE_PERIOD,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks or TenantLockRegistry()
        self._cache = cache
        self._clock = clock
        self._grace_period = grace_period

    async def process(self, event: BillingEvent) -> ProcessingOutcome:
        """Claim and apply *event*.

        Returns
        -------
        ProcessingOutcome
            ``duplicate`` when the ledger already holds the event id,
            ``unknown_tenant`` when no tenant matches, ``ignored`` when the
            state machine made no change, ``processed`` otherwise.

        Raises
        ------
        SQLAlchemyError
            On persistence failure; nothing was committed.
        """
        async with self._session_factory() as session:
            tenant_id = await TenantRepository(session).resolve_tenant_id(
                stripe_customer_id=event.customer_id,
                tenant_hint=event.tenant_hint,
            )

        if tenant_id is None:
            logger.warning(
                "Billing event %s type=%s has no resolvable tenant (customer=%s); skipping",
                event.event_id,
                event.event_type,
                event.customer_id,
            )
            return ProcessingOutcome(
                status=ProcessingStatus.UNKNOWN_TENANT,
                event_id=event.event_id,
                event_type=event.event_type,
            )

        async with self._locks.hold(tenant_id):
            async with self._session_factory() as session:
                async with session.begin():
                    already = await EventLedger(session, clock=self._clock).claim_event(
                        event.event_id, event.event_type
                    )
                    if already:
                        return ProcessingOutcome(
                            status=ProcessingStatus.DUPLICATE,
                            event_id=event.event_id,
                            event_type=event.event_type,
                            tenant_id=tenant_id,
                        )

                    tenant = await TenantRepository(session).get(tenant_id, for_update=True)
                    if tenant is None:
                        raise NotFound(f"Tenant {tenant_id} disappeared while processing {event.event_id}")

                    now = self._clock()
                    result = transition(
                        TenantSnapshot.from_row(tenant),
                        event,
                        now=now,
                        grace_period=self._grace_period,
                    )
                    if result.applied:
                        for column, value in result.changes.items():
                            setattr(tenant, column, value)
                        tenant.updated_at = now

            if not result.applied:
                return ProcessingOutcome(
                    status=ProcessingStatus.IGNORED,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    tenant_id=tenant_id,
                    reason=result.ignored_reason,
                )

            if result.invalidates_cache and self._cache is not None:
                dropped = self._cache.invalidate_tenant(tenant_id)
                logger.info("Invalidated %d cached entitlement(s) for tenant=%s", dropped, tenant_id)

            if result.audit_action is not None:
                await record_audit(
                    self._session_factory,
                    tenant_id=tenant_id,
                    actor=None,
                    action=result.audit_action,
                    entity_type="subscription",
                    entity_id=tenant_id,
                    metadata={"event_id": event.event_id, "event_type": event.event_type, **result.audit_details},
                )

        logger.info(
            "Applied billing event %s (%s) to tenant=%s: status=%s",
            event.event_id,
            event.event_type,
            tenant_id,
            result.new_status.value if result.new_status else None,
        )
        return ProcessingOutcome(
            status=ProcessingStatus.PROCESSED,
            event_id=event.event_id,
            event_type=event.event_type,
            tenant_id=tenant_id,
            new_status=result.new_status,
        )
