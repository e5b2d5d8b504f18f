"""Tests for the Stripe gateway wrapper."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe
from billing_core.errors import ExternalServiceError, SignatureInvalid
from pydantic import SecretStr

from crm_api.services.stripe_gateway import StripeGateway


def _gateway(client=None, *, secret_key: str = "sk_test_dummy", webhook_secret: str = "whsec_test_secret"):
    return StripeGateway(
        SecretStr(secret_key),
        webhook_secret=SecretStr(webhook_secret),
        webhook_tolerance_seconds=300,
        client=client,
    )


class TestOutboundCalls:
    @pytest.mark.asyncio
    async def test_customer_is_tagged_with_tenant(self, gateway, stripe_client):
        customer_id = await gateway.create_customer(tenant_id="t1", name="Maple Clinic", email="ops@maple.test")

        assert customer_id == "cus_new"
        params = stripe_client.v1.customers.create_async.call_args.kwargs["params"]
        assert params == {"metadata": {"tenant_id": "t1"}, "name": "Maple Clinic", "email": "ops@maple.test"}

    @pytest.mark.asyncio
    async def test_checkout_without_trial_omits_trial_days(self, gateway, stripe_client):
        await gateway.create_checkout_session(
            tenant_id="t1",
            customer_id="cus_1",
            price_id="price_1",
            trial_period_days=0,
            success_url="https://ok",
            cancel_url="https://no",
        )

        params = stripe_client.v1.checkout.sessions.create_async.call_args.kwargs["params"]
        assert params["subscription_data"] == {"metadata": {"tenant_id": "t1"}}
        assert params["metadata"] == {"tenant_id": "t1", "trial_period_days": "0"}

    @pytest.mark.asyncio
    async def test_stripe_error_is_mapped(self, gateway, stripe_client):
        stripe_client.v1.billing_portal.sessions.create_async = AsyncMock(
            side_effect=stripe.APIConnectionError("connection reset")
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await gateway.create_portal_session(customer_id="cus_1", return_url="https://back")
        assert exc_info.value.error_code == "external_service_error"

    @pytest.mark.asyncio
    async def test_missing_secret_key(self):
        gateway = _gateway(secret_key="")

        with pytest.raises(ExternalServiceError) as exc_info:
            await gateway.create_customer(tenant_id="t1")
        assert exc_info.value.error_code == "billing_not_configured"

    @pytest.mark.asyncio
    async def test_invoice_summaries(self, gateway, stripe_client):
        invoice = MagicMock(
            id="in_1",
            number="A-0001",
            status="paid",
            amount_due=4900,
            amount_paid=4900,
            currency="usd",
            created=1767225600,
            hosted_invoice_url="https://invoice.stripe.test/in_1",
            invoice_pdf=None,
        )
        stripe_client.v1.invoices.list_async = AsyncMock(return_value=MagicMock(data=[invoice]))

        invoices = await gateway.list_invoices("cus_1")

        assert [i.id for i in invoices] == ["in_1"]
        assert invoices[0].created.year == 2026
        assert stripe_client.v1.invoices.list_async.call_args.kwargs["params"] == {"customer": "cus_1", "limit": 10}


class TestWebhookVerification:
    def test_valid_signature(self, gateway, sign_webhook):
        body, sig = sign_webhook({"id": "evt_1", "type": "invoice.paid", "data": {"object": {"customer": "cus_1"}}})

        event = gateway.verify_webhook(body, sig)

        assert event.event_id == "evt_1"
        assert event.data_object == {"customer": "cus_1"}

    def test_missing_header(self, gateway):
        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook(b"{}", None)

    def test_wrong_secret(self, gateway, sign_webhook):
        body, sig = sign_webhook({"id": "evt_1", "type": "invoice.paid"}, secret="whsec_other")

        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook(body, sig)

    def test_stale_timestamp(self, gateway, sign_webhook):
        body, sig = sign_webhook({"id": "evt_1", "type": "invoice.paid"}, timestamp=int(time.time()) - 3600)

        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook(body, sig)

    def test_signed_body_without_event_id(self, gateway, sign_webhook):
        body, sig = sign_webhook({"type": "invoice.paid"})

        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook(body, sig)

    def test_signed_non_object_body(self, gateway, sign_webhook):
        body, sig = sign_webhook([])

        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook(body, sig)

    def test_unconfigured_secret_rejects_everything(self, sign_webhook):
        body, sig = sign_webhook({"id": "evt_1", "type": "invoice.paid"})

        with pytest.raises(SignatureInvalid):
            _gateway(webhook_secret="").verify_webhook(body, sig)
