"""Tests for the audit query and chain verification endpoints."""

from __future__ import annotations

import pytest
from billing_core.models.roles import Role


class TestAuditRouter:
    @pytest.mark.asyncio
    async def test_rotation_is_visible_in_audit_log(self, client, auth_headers, make_tenant):
        await make_tenant("t1")
        await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1", sub="admin@clinic"))

        resp = await client.get("/api/v1/audit", headers=auth_headers("t1"))

        assert resp.status_code == 200
        entries = resp.json()
        assert [e["action"] for e in entries] == ["api_key_regenerated"]
        assert entries[0]["actor"] == "admin@clinic"
        # Only prefixes are recorded, never key material.
        assert set(entries[0]["metadata"]) == {"new_prefix", "old_prefix", "grace_period_expires_at"}

    @pytest.mark.asyncio
    async def test_chain_verifies(self, client, auth_headers, make_tenant):
        await make_tenant("t1")
        for _ in range(3):
            await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))

        resp = await client.get("/api/v1/audit/verify", headers=auth_headers("t1"))

        assert resp.json() == {"is_valid": True, "entries_checked": 3}

    @pytest.mark.asyncio
    async def test_plain_user_is_forbidden(self, client, auth_headers, make_tenant):
        await make_tenant("t1")

        resp = await client.get("/api/v1/audit", headers=auth_headers("t1", role=Role.USER))

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_requires_entitled_subscription(self, client, auth_headers, make_tenant):
        await make_tenant("t1", subscription_status="suspended")

        resp = await client.get("/api/v1/audit", headers=auth_headers("t1"))

        assert resp.status_code == 402
        assert resp.json() == {
            "detail": "An active subscription is required",
            "error_code": "subscription_inactive",
        }
