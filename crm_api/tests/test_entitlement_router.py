"""Tests for ``GET /api/v1/entitlement`` and the session verification cache."""

from __future__ import annotations

from datetime import timedelta

import pytest
from billing_core.models.roles import Role
from billing_core.state.tables import TenantTable

URL = "/api/v1/entitlement"


async def _set_status(session_factory, tenant_id: str, status: str, **fields) -> None:
    async with session_factory() as session:
        tenant = await session.get(TenantTable, tenant_id)
        tenant.subscription_status = status
        for key, value in fields.items():
            setattr(tenant, key, value)
        await session.commit()


class TestDecisions:
    @pytest.mark.asyncio
    async def test_anonymous_caller_is_sent_to_login(self, client):
        resp = await client.get(URL)

        assert resp.status_code == 200
        assert resp.json() == {"allowed": False, "reason": "unauthenticated", "redirect": "login", "status": None}

    @pytest.mark.asyncio
    async def test_invalid_token_is_still_rejected(self, client):
        resp = await client.get(URL, headers={"Authorization": "Bearer not-a-jwt"})

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_active_tenant_is_allowed(self, client, auth_headers, make_tenant):
        await make_tenant("t1", subscription_status="active")

        resp = await client.get(URL, headers=auth_headers("t1", role=Role.USER))

        assert resp.json()["allowed"] is True
        assert resp.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_past_due_inside_and_after_grace(self, client, auth_headers, make_tenant, clock):
        await make_tenant("t1", subscription_status="past_due", grace_period_ends_at=clock.now + timedelta(days=2))
        headers = auth_headers("t1", role=Role.USER)

        inside = await client.get(URL, headers=headers)
        clock.advance(days=3)
        after = await client.get(URL, headers=headers)

        assert inside.json()["reason"] == "grace_period"
        assert after.json() == {
            "allowed": False,
            "reason": "grace_period_expired",
            "redirect": "billing",
            "status": "past_due",
        }

    @pytest.mark.asyncio
    async def test_super_admin_bypasses_cancelled_tenant(self, client, auth_headers, make_tenant):
        await make_tenant("t1", subscription_status="cancelled")

        resp = await client.get(URL, headers=auth_headers("t1", role=Role.SUPER_ADMIN))

        assert resp.json()["allowed"] is True
        assert resp.json()["reason"] == "super_admin"

    @pytest.mark.asyncio
    async def test_missing_tenant_is_denied(self, client, auth_headers):
        resp = await client.get(URL, headers=auth_headers("ghost", role=Role.USER))

        assert resp.json()["reason"] == "no_tenant"

    @pytest.mark.asyncio
    async def test_ungated_resource(self, client, auth_headers, make_tenant):
        await make_tenant("t1", subscription_status="suspended")

        resp = await client.get(URL, params={"requires_subscription": "false"}, headers=auth_headers("t1"))

        assert resp.json()["allowed"] is True
        assert resp.json()["reason"] == "not_subscription_gated"


class TestCache:
    @pytest.mark.asyncio
    async def test_verdict_is_cached_for_thirty_minutes(
        self, client, auth_headers, make_tenant, session_factory, clock
    ):
        await make_tenant("t1", subscription_status="active")
        headers = auth_headers("t1", role=Role.USER)
        assert (await client.get(URL, headers=headers)).json()["allowed"] is True

        # A direct row change (no webhook) is only seen once the entry expires.
        await _set_status(session_factory, "t1", "suspended")
        clock.advance(minutes=29)
        assert (await client.get(URL, headers=headers)).json()["allowed"] is True

        clock.advance(minutes=2)
        assert (await client.get(URL, headers=headers)).json()["allowed"] is False

    @pytest.mark.asyncio
    async def test_webhook_cancellation_revokes_cached_verdict(
        self, client, auth_headers, make_tenant, sign_webhook, cache
    ):
        await make_tenant("t1", subscription_status="active", stripe_customer_id="cus_1")
        headers = auth_headers("t1", role=Role.USER)
        assert (await client.get(URL, headers=headers)).json()["allowed"] is True
        assert len(cache) == 1

        body, sig = sign_webhook(
            {"id": "evt_del", "type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_1"}}}
        )
        await client.post("/api/v1/billing/webhooks", content=body, headers={"Stripe-Signature": sig})

        resp = await client.get(URL, headers=headers)
        assert resp.json()["allowed"] is False
        assert resp.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_grace_period_allow_does_not_populate_cache(self, client, auth_headers, make_tenant, cache, clock):
        await make_tenant("t1", subscription_status="past_due", grace_period_ends_at=clock.now + timedelta(days=1))

        await client.get(URL, headers=auth_headers("t1", role=Role.USER))

        assert len(cache) == 0
