"""Billing endpoints: Stripe webhooks, checkout, portal, subscription, invoices."""

from __future__ import annotations

import logging

from billing_core.models.roles import Role
from fastapi import APIRouter, Depends, Request

from crm_api.dependencies import BillingServiceDep, UserDep, WebhookServiceDep
from crm_api.middleware.rbac import get_user_role, require_admin
from crm_api.schemas import (
    CheckoutRequest,
    CheckoutSessionResponse,
    InvoiceListResponse,
    PortalRequest,
    PortalSessionResponse,
    SubscriptionResponse,
)
from crm_api.services.webhook_service import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks", response_model=WebhookAck)
async def stripe_webhook(request: Request, service: WebhookServiceDep) -> WebhookAck:
    """Handle incoming Stripe webhook events.

    Authenticated by the ``Stripe-Signature`` header instead of a bearer
    token.  A bad or missing signature yields 400; every verified delivery
    is acknowledged with 200 so Stripe does not retry events that were
    handled, duplicated, or failed for reasons a retry will not fix.
    """
    body = await request.body()
    return await service.handle(
        body,
        request.headers.get("stripe-signature"),
        client_host=request.client.host if request.client else None,
    )


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    service: BillingServiceDep,
    user: UserDep,
    body: CheckoutRequest | None = None,
    _role: Role = Depends(require_admin),
) -> CheckoutSessionResponse:
    """Create a hosted checkout session, creating the Stripe customer if needed.

    A tenant that has never been billed gets a 14-day trial; everyone else
    is charged immediately.
    """
    body = body or CheckoutRequest()
    checkout, trial_days = await service.create_checkout_session(
        actor=user,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutSessionResponse(
        checkout_url=checkout.checkout_url,
        session_id=checkout.session_id,
        trial_period_days=trial_days,
    )


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    service: BillingServiceDep,
    user: UserDep,
    body: PortalRequest | None = None,
    _role: Role = Depends(require_admin),
) -> PortalSessionResponse:
    """Open the Stripe customer portal; 404 when no customer exists yet."""
    url = await service.create_portal_session(actor=user, return_url=body.return_url if body else None)
    return PortalSessionResponse(url=url)


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    service: BillingServiceDep,
    _role: Role = Depends(get_user_role),
) -> SubscriptionResponse:
    info = await service.get_subscription_info()
    return SubscriptionResponse(**info.model_dump())


@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    service: BillingServiceDep,
    user: UserDep,
    _role: Role = Depends(require_admin),
) -> InvoiceListResponse:
    """Return up to ten recent invoices for the tenant."""
    return InvoiceListResponse(invoices=await service.list_invoices(actor=user))
