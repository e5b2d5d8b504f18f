"""Thin async wrapper over the Stripe SDK.

Every outbound call goes through :meth:`StripeGateway._call`, which applies
the configured timeout (via the SDK's httpx client), disables SDK retries and
maps any Stripe failure to :class:`ExternalServiceError` so callers never see
SDK exception types.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
from billing_core.errors import ExternalServiceError, SignatureInvalid
from billing_core.models.events import BillingEvent
from pydantic import BaseModel, SecretStr, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVOICE_LIST_LIMIT = 10


class CheckoutSession(BaseModel):
    session_id: str
    checkout_url: str


class InvoiceSummary(BaseModel):
    id: str
    number: str | None = None
    status: str | None = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    created: datetime | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None


class StripeGateway:
    """Stripe operations used by the billing endpoints.

    Parameters
    ----------
    secret_key:
        Stripe secret API key.
    webhook_secret:
        Endpoint signing secret (``whsec_...``).
    timeout_seconds:
        Per-request network timeout.
    webhook_tolerance_seconds:
        Maximum accepted age of a webhook signature timestamp.
    client:
        Pre-built :class:`stripe.StripeClient`; built lazily when omitted.
    """

    def __init__(
        self,
        secret_key: SecretStr,
        *,
        webhook_secret: SecretStr,
        timeout_seconds: float = 10.0,
        webhook_tolerance_seconds: int = 300,
        client: stripe.StripeClient | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout_seconds
        self._tolerance = webhook_tolerance_seconds
        self._client = client

    def _get_client(self) -> stripe.StripeClient:
        if self._client is None:
            api_key = self._secret_key.get_secret_value()
            if not api_key:
                raise ExternalServiceError("Stripe secret key is not configured", error_code="billing_not_configured")
            self._client = stripe.StripeClient(
                api_key,
                http_client=stripe.HTTPXClient(timeout=self._timeout),
                max_network_retries=0,
            )
        return self._client

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except stripe.StripeError as exc:
            logger.error(
                "Stripe %s failed: %s (request_id=%s)",
                operation,
                type(exc).__name__,
                getattr(exc, "request_id", None),
            )
            raise ExternalServiceError(f"Stripe {operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, sig_header: str | None) -> BillingEvent:
        """Verify the ``Stripe-Signature`` header and decode the event.

        Raises
        ------
        SignatureInvalid
            If the header is missing, the signature does not match, the
            timestamp is outside the tolerance, or the body is not a valid
            event.
        """
        secret = self._webhook_secret.get_secret_value()
        if not secret:
            logger.error("Webhook received but no signing secret is configured; rejecting")
            raise SignatureInvalid("Webhook signing secret not configured")
        if not sig_header:
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, sig_header, secret, self._tolerance)
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("Webhook body is not UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(f"Signature verification failed: {exc}") from exc

        try:
            return BillingEvent.from_payload(json.loads(body))
        except (ValueError, ValidationError) as exc:
            raise SignatureInvalid(f"Malformed webhook body: {exc}") from exc

    # ------------------------------------------------------------------
    # Customers, checkout, portal, invoices
    # ------------------------------------------------------------------

    async def create_customer(self, *, tenant_id: str, name: str | None = None, email: str | None = None) -> str:
        """Create a customer tagged with the tenant id and return its id."""
        params: dict[str, Any] = {"metadata": {"tenant_id": tenant_id}}
        if name:
            params["name"] = name
        if email:
            params["email"] = email
        customer = await self._call(
            "customer creation",
            self._get_client().v1.customers.create_async(params=params),
        )
        return customer.id

    async def create_checkout_session(
        self,
        *,
        tenant_id: str,
        customer_id: str,
        price_id: str,
        trial_period_days: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Start a hosted subscription checkout.

        The tenant id and granted trial length are stamped into both the
        session and the subscription metadata so every later webhook can be
        attributed to the tenant.
        """
        metadata = {"tenant_id": tenant_id, "trial_period_days": str(trial_period_days)}
        subscription_data: dict[str, Any] = {"metadata": {"tenant_id": tenant_id}}
        if trial_period_days > 0:
            subscription_data["trial_period_days"] = trial_period_days

        session = await self._call(
            "checkout session creation",
            self._get_client().v1.checkout.sessions.create_async(
                params={
                    "mode": "subscription",
                    "customer": customer_id,
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": metadata,
                    "subscription_data": subscription_data,
                    "allow_promotion_codes": True,
                    "billing_address_collection": "required",
                }
            ),
        )
        return CheckoutSession(session_id=session.id, checkout_url=session.url)

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        """Open a customer portal session and return its URL."""
        session = await self._call(
            "portal session creation",
            self._get_client().v1.billing_portal.sessions.create_async(
                params={"customer": customer_id, "return_url": return_url}
            ),
        )
        return session.url

    async def list_invoices(self, customer_id: str, *, limit: int = INVOICE_LIST_LIMIT) -> list[InvoiceSummary]:
        """Return the customer's most recent invoices."""
        page = await self._call(
            "invoice listing",
            self._get_client().v1.invoices.list_async(params={"customer": customer_id, "limit": limit}),
        )
        return [_invoice_summary(invoice) for invoice in page.data]


def _invoice_summary(invoice: Any) -> InvoiceSummary:
    created = getattr(invoice, "created", None)
    return InvoiceSummary(
        id=getattr(invoice, "id", None),
        number=getattr(invoice, "number", None),
        status=getattr(invoice, "status", None),
        amount_due=getattr(invoice, "amount_due", None) or 0,
        amount_paid=getattr(invoice, "amount_paid", None) or 0,
        currency=getattr(invoice, "currency", None) or "usd",
        created=datetime.fromtimestamp(created, tz=UTC) if created else None,
        hosted_invoice_url=getattr(invoice, "hosted_invoice_url", None),
        invoice_pdf=getattr(invoice, "invoice_pdf", None),
    )
