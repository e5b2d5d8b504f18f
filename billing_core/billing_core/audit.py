"""Audit action names and the best-effort audit writer.

Audit rows are written in their own short transaction after the primary
operation has committed.  A failed audit write is logged and swallowed: it
never rolls back, or reports failure for, the operation it describes.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.state.repository import AuditRepository

logger = logging.getLogger(__name__)


class AuditAction:
    """Audit action kinds recorded by the trust core."""

    API_KEY_REGENERATED = "api_key_regenerated"
    API_KEY_GRACE_PERIOD_EXPIRED = "api_key_grace_period_expired"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    STRIPE_CUSTOMER_CREATED = "stripe_customer_created"
    CHECKOUT_SESSION_CREATED = "checkout_session_created"
    BILLING_PORTAL_OPENED = "billing_portal_opened"
    INVOICES_VIEWED = "invoices_viewed"


async def record_audit(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    tenant_id: str,
    actor: str | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> str | None:
    """Append one audit entry, returning its id or ``None`` if the write failed.

    *metadata* must never contain plaintext secrets or full hashes.
    """
    try:
        async with session_factory() as session:
            repo = AuditRepository(session, tenant_id=tenant_id)
            entry_id = await repo.log(
                actor=actor,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
            )
            await session.commit()
            return entry_id
    except SQLAlchemyError:
        logger.warning(
            "Audit write failed (tenant=%s action=%s); primary operation unaffected",
            tenant_id,
            action,
            exc_info=True,
        )
        return None
