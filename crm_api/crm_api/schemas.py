"""Pydantic request and response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from crm_api.services.stripe_gateway import InvoiceSummary

# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``; both URLs are optional."""

    success_url: str | None = Field(default=None, description="Redirect target after payment.")
    cancel_url: str | None = Field(default=None, description="Redirect target if the user backs out.")


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_id: str
    trial_period_days: int


class PortalRequest(BaseModel):
    return_url: str | None = Field(default=None, description="URL to return to from the portal.")


class PortalSessionResponse(BaseModel):
    url: str


class InvoiceListResponse(BaseModel):
    invoices: list[InvoiceSummary]


class SubscriptionResponse(BaseModel):
    tenant_id: str
    status: str | None
    has_customer: bool
    stripe_subscription_id: str | None = None
    current_period_end: datetime | None = None
    grace_period_ends_at: datetime | None = None
    grace_period_active: bool = False


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class APIKeyRotationResponse(BaseModel):
    """The plaintext key is present in this response and nowhere else."""

    api_key: str
    prefix: str
    grace_period_minutes: int
    old_key_expires_at: datetime | None = None
    rotated_at: datetime
    warning: str


class APIKeyStatusResponse(BaseModel):
    tenant_id: str
    has_key: bool
    prefix: str | None = None
    grace_period_active: bool
    old_key_expires_at: datetime | None = None


class SweepResponse(BaseModel):
    cleaned_count: int
    tenant_ids: list[str]


# ---------------------------------------------------------------------------
# Entitlement / integrations
# ---------------------------------------------------------------------------


class EntitlementResponse(BaseModel):
    allowed: bool
    reason: str
    redirect: str | None = None
    status: str | None = None


class WhoAmIResponse(BaseModel):
    tenant_id: str
    authenticated_via: str = "api_key"
    entitlement: EntitlementResponse


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    id: str
    actor: str | None
    action: str
    entity_type: str | None = None
    entity_id: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime


class AuditChainResponse(BaseModel):
    is_valid: bool
    entries_checked: int
