"""Tenant-facing billing operations: customer, checkout, portal, invoices.

Subscription *state* is never written here; it only changes when the
corresponding webhook arrives and is applied by the subscription processor.
"""

from __future__ import annotations

import logging
from datetime import datetime

from billing_core.audit import AuditAction, record_audit
from billing_core.clock import Clock, utcnow
from billing_core.entitlement.gate import is_grace_period_active
from billing_core.errors import NotFound
from billing_core.models.subscription import normalize_status
from billing_core.state.locks import TenantLockRegistry
from billing_core.state.repository import TenantRepository
from billing_core.state.tables import TenantTable
from billing_core.subscription.state_machine import trial_period_days_for
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_api.config import CRMSettings
from crm_api.services.stripe_gateway import CheckoutSession, InvoiceSummary, StripeGateway

logger = logging.getLogger(__name__)


class SubscriptionInfo(BaseModel):
    tenant_id: str
    status: str | None
    has_customer: bool
    stripe_subscription_id: str | None = None
    current_period_end: datetime | None = None
    grace_period_ends_at: datetime | None = None
    grace_period_active: bool = False


class BillingService:
    """Billing operations for one tenant.

    Parameters
    ----------
    session_factory:
        Factory for the short transactions this service opens.
    gateway:
        Stripe wrapper.
    settings:
        Application settings (price id and return URLs).
    tenant_id:
        The tenant performing billing operations.
    locks:
        Per-tenant lock registry; serialises customer creation.
    clock:
        Time source, injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        settings: CRMSettings,
        *,
        tenant_id: str,
        locks: TenantLockRegistry | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._tenant_id = tenant_id
        self._locks = locks or TenantLockRegistry()
        self._clock = clock

    async def _load_tenant(self) -> TenantTable:
        async with self._session_factory() as session:
            tenant = await TenantRepository(session).get(self._tenant_id)
        if tenant is None:
            raise NotFound(f"Tenant {self._tenant_id} not found")
        return tenant

    async def get_or_create_customer(self, *, actor: str | None) -> str:
        """Return the tenant's Stripe customer id, creating the customer if needed.

        Creation happens under the tenant lock and the id is attached with a
        conditional update, so two concurrent checkouts cannot both link a
        customer.
        """
        tenant = await self._load_tenant()
        if tenant.stripe_customer_id:
            return tenant.stripe_customer_id

        async with self._locks.hold(self._tenant_id):
            tenant = await self._load_tenant()
            if tenant.stripe_customer_id:
                return tenant.stripe_customer_id

            customer_id = await self._gateway.create_customer(tenant_id=self._tenant_id, name=tenant.name or None)
            async with self._session_factory() as session:
                async with session.begin():
                    attached = await TenantRepository(session).attach_customer(self._tenant_id, customer_id)
            if not attached:
                # Linked by a webhook in the meantime; keep the existing link.
                logger.warning(
                    "Tenant %s gained a customer while creating %s; discarding the new one",
                    self._tenant_id,
                    customer_id,
                )
                return (await self._load_tenant()).stripe_customer_id

            await record_audit(
                self._session_factory,
                tenant_id=self._tenant_id,
                actor=actor,
                action=AuditAction.STRIPE_CUSTOMER_CREATED,
                entity_type="stripe_customer",
                entity_id=customer_id,
            )
        logger.info("Created Stripe customer %s for tenant=%s", customer_id, self._tenant_id)
        return customer_id

    async def create_checkout_session(
        self,
        *,
        actor: str | None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> tuple[CheckoutSession, int]:
        """Start a subscription checkout for the tenant.

        Returns
        -------
        tuple[CheckoutSession, int]
            The hosted session and the trial days granted (14 for a tenant
            that has never been billed, otherwise 0).
        """
        customer_id = await self.get_or_create_customer(actor=actor)
        tenant = await self._load_tenant()
        trial_days = trial_period_days_for(tenant.subscription_status)

        base = self._settings.app_base_url.rstrip("/")
        checkout = await self._gateway.create_checkout_session(
            tenant_id=self._tenant_id,
            customer_id=customer_id,
            price_id=self._settings.stripe_price_id,
            trial_period_days=trial_days,
            success_url=success_url or f"{base}/billing?checkout=success",
            cancel_url=cancel_url or f"{base}/billing?checkout=cancelled",
        )
        await record_audit(
            self._session_factory,
            tenant_id=self._tenant_id,
            actor=actor,
            action=AuditAction.CHECKOUT_SESSION_CREATED,
            entity_type="checkout_session",
            entity_id=checkout.session_id,
            metadata={"trial_period_days": trial_days},
        )
        return checkout, trial_days

    async def create_portal_session(self, *, actor: str | None, return_url: str | None = None) -> str:
        """Open the customer portal.

        Raises
        ------
        NotFound
            If the tenant has no Stripe customer yet.
        """
        tenant = await self._load_tenant()
        if not tenant.stripe_customer_id:
            raise NotFound(f"Tenant {self._tenant_id} has no billing customer", error_code="no_billing_customer")

        url = await self._gateway.create_portal_session(
            customer_id=tenant.stripe_customer_id,
            return_url=return_url or f"{self._settings.app_base_url.rstrip('/')}/billing",
        )
        await record_audit(
            self._session_factory,
            tenant_id=self._tenant_id,
            actor=actor,
            action=AuditAction.BILLING_PORTAL_OPENED,
            entity_type="stripe_customer",
            entity_id=tenant.stripe_customer_id,
        )
        return url

    async def list_invoices(self, *, actor: str | None) -> list[InvoiceSummary]:
        """Return up to ten recent invoices; empty without a customer."""
        tenant = await self._load_tenant()
        if not tenant.stripe_customer_id:
            return []

        invoices = await self._gateway.list_invoices(tenant.stripe_customer_id)
        await record_audit(
            self._session_factory,
            tenant_id=self._tenant_id,
            actor=actor,
            action=AuditAction.INVOICES_VIEWED,
            entity_type="stripe_customer",
            entity_id=tenant.stripe_customer_id,
            metadata={"count": len(invoices)},
        )
        return invoices

    async def get_subscription_info(self) -> SubscriptionInfo:
        tenant = await self._load_tenant()
        status = normalize_status(tenant.subscription_status)
        return SubscriptionInfo(
            tenant_id=self._tenant_id,
            status=status.value if status else tenant.subscription_status,
            has_customer=bool(tenant.stripe_customer_id),
            stripe_subscription_id=tenant.stripe_subscription_id,
            current_period_end=tenant.subscription_current_period_end,
            grace_period_ends_at=tenant.grace_period_ends_at,
            grace_period_active=is_grace_period_active(status, tenant.grace_period_ends_at, self._clock()),
        )
