"""Tests for the tenant-facing billing endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe
from billing_core.models.roles import Role
from billing_core.state.repository import AuditRepository


async def _audit_actions(session_factory, tenant_id: str) -> list[str]:
    async with session_factory() as session:
        return [e.action for e in await AuditRepository(session, tenant_id=tenant_id).query()]


class TestCheckout:
    @pytest.mark.asyncio
    async def test_first_checkout_creates_customer_and_grants_trial(
        self, client, auth_headers, make_tenant, load_tenant, stripe_client, session_factory
    ):
        await make_tenant("t1", subscription_status="inactive")

        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("t1"))

        assert resp.status_code == 200
        data = resp.json()
        assert data == {
            "checkout_url": "https://checkout.stripe.test/cs_test_1",
            "session_id": "cs_test_1",
            "trial_period_days": 14,
        }
        assert (await load_tenant("t1")).stripe_customer_id == "cus_new"

        params = stripe_client.v1.checkout.sessions.create_async.call_args.kwargs["params"]
        assert params["customer"] == "cus_new"
        assert params["metadata"] == {"tenant_id": "t1", "trial_period_days": "14"}
        assert params["subscription_data"] == {"metadata": {"tenant_id": "t1"}, "trial_period_days": 14}
        assert params["line_items"] == [{"price": "price_test_monthly", "quantity": 1}]
        assert params["success_url"].startswith("https://crm.example.test/billing")

        actions = await _audit_actions(session_factory, "t1")
        assert sorted(actions) == ["checkout_session_created", "stripe_customer_created"]

    @pytest.mark.asyncio
    async def test_returning_customer_gets_no_trial(self, client, auth_headers, make_tenant, stripe_client):
        await make_tenant("t1", subscription_status="cancelled", stripe_customer_id="cus_old")

        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("t1"))

        assert resp.json()["trial_period_days"] == 0
        stripe_client.v1.customers.create_async.assert_not_awaited()
        params = stripe_client.v1.checkout.sessions.create_async.call_args.kwargs["params"]
        assert params["customer"] == "cus_old"
        assert "trial_period_days" not in params["subscription_data"]

    @pytest.mark.asyncio
    async def test_plain_user_is_forbidden(self, client, auth_headers, make_tenant, stripe_client):
        await make_tenant("t1")

        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("t1", role=Role.USER))

        assert resp.status_code == 403
        stripe_client.v1.checkout.sessions.create_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stripe_failure_is_502_without_state_change(
        self, client, auth_headers, make_tenant, load_tenant, stripe_client
    ):
        await make_tenant("t1", subscription_status="inactive")
        stripe_client.v1.customers.create_async = AsyncMock(
            side_effect=stripe.APIConnectionError("Request timed out")
        )

        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers("t1"))

        assert resp.status_code == 502
        assert resp.json() == {"detail": "Payment provider unavailable", "error_code": "external_service_error"}
        assert (await load_tenant("t1")).stripe_customer_id is None


class TestPortal:
    @pytest.mark.asyncio
    async def test_portal_without_customer_is_404(self, client, auth_headers, make_tenant):
        await make_tenant("t1")

        resp = await client.post("/api/v1/billing/portal", headers=auth_headers("t1"))

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "no_billing_customer"

    @pytest.mark.asyncio
    async def test_portal_returns_url_and_audits(self, client, auth_headers, make_tenant, session_factory):
        await make_tenant("t1", stripe_customer_id="cus_1")

        resp = await client.post(
            "/api/v1/billing/portal",
            headers=auth_headers("t1"),
            json={"return_url": "https://crm.example.test/settings"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"url": "https://billing.stripe.test/session"}
        assert await _audit_actions(session_factory, "t1") == ["billing_portal_opened"]


class TestInvoices:
    @pytest.mark.asyncio
    async def test_no_customer_returns_empty_list(self, client, auth_headers, make_tenant, stripe_client):
        await make_tenant("t1")

        resp = await client.get("/api/v1/billing/invoices", headers=auth_headers("t1"))

        assert resp.status_code == 200
        assert resp.json() == {"invoices": []}
        stripe_client.v1.invoices.list_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lists_up_to_ten_invoices(self, client, auth_headers, make_tenant, stripe_client, session_factory):
        await make_tenant("t1", stripe_customer_id="cus_1")
        invoice = MagicMock(
            id="in_1",
            number="CRM-0001",
            status="paid",
            amount_due=4900,
            amount_paid=4900,
            currency="usd",
            created=1772443800,
            hosted_invoice_url="https://invoice.stripe.test/in_1",
            invoice_pdf=None,
        )
        stripe_client.v1.invoices.list_async = AsyncMock(return_value=MagicMock(data=[invoice]))

        resp = await client.get("/api/v1/billing/invoices", headers=auth_headers("t1"))

        invoices = resp.json()["invoices"]
        assert [i["id"] for i in invoices] == ["in_1"]
        assert invoices[0]["amount_paid"] == 4900
        params = stripe_client.v1.invoices.list_async.call_args.kwargs["params"]
        assert params == {"customer": "cus_1", "limit": 10}
        assert await _audit_actions(session_factory, "t1") == ["invoices_viewed"]


class TestSubscription:
    @pytest.mark.asyncio
    async def test_reports_grace_state(self, client, auth_headers, make_tenant, clock):
        await make_tenant(
            "t1",
            subscription_status="past_due",
            stripe_customer_id="cus_1",
            grace_period_ends_at=clock.now.replace(day=5),
        )

        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers("t1", role=Role.USER))

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "past_due"
        assert data["has_customer"] is True
        assert data["grace_period_active"] is True

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_404(self, client, auth_headers):
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers("ghost"))

        assert resp.status_code == 404
