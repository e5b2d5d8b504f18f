"""Tests for the API-key endpoints."""

from __future__ import annotations

import pytest
from billing_core.models.roles import Role


class TestRotate:
    @pytest.mark.asyncio
    async def test_admin_receives_plaintext_once(self, client, auth_headers, make_tenant, load_tenant):
        await make_tenant("t1")

        resp = await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))

        assert resp.status_code == 200
        data = resp.json()
        assert data["api_key"].startswith("lh_")
        assert data["prefix"] == data["api_key"][:8]
        assert data["grace_period_minutes"] == 0
        assert "will not be shown again" in data["warning"]

        tenant = await load_tenant("t1")
        assert tenant.api_key_prefix == data["prefix"]
        assert data["api_key"] not in (tenant.api_key_hash or "")

    @pytest.mark.asyncio
    async def test_second_rotation_opens_grace_window(self, client, auth_headers, make_tenant):
        await make_tenant("t1")
        await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))

        resp = await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))

        data = resp.json()
        assert data["grace_period_minutes"] == 60
        assert data["old_key_expires_at"] is not None
        assert "60 minutes" in data["warning"]

    @pytest.mark.asyncio
    async def test_super_admin_may_rotate(self, client, auth_headers, make_tenant):
        await make_tenant("t1")

        resp = await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1", role=Role.SUPER_ADMIN))

        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_plain_user_is_forbidden(self, client, auth_headers, make_tenant, load_tenant):
        await make_tenant("t1")

        resp = await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1", role=Role.USER))

        assert resp.status_code == 403
        assert resp.json() == {"detail": "Permission denied", "error_code": "permission_denied"}
        assert (await load_tenant("t1")).api_key_hash is None

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_404(self, client, auth_headers):
        resp = await client.post("/api/v1/api-keys/rotate", headers=auth_headers("ghost"))

        assert resp.status_code == 404


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_never_exposes_hashes(self, client, auth_headers, make_tenant):
        await make_tenant("t1")
        rotated = (await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))).json()

        resp = await client.get("/api/v1/api-keys", headers=auth_headers("t1", role=Role.USER))

        assert resp.status_code == 200
        data = resp.json()
        assert data["prefix"] == rotated["prefix"]
        assert data["has_key"] is True
        assert "api_key_hash" not in data
        assert rotated["api_key"] not in resp.text


class TestSweep:
    @pytest.mark.asyncio
    async def test_requires_super_admin(self, client, auth_headers):
        resp = await client.post("/api/v1/api-keys/sweep", headers=auth_headers("t1", role=Role.CLINIC_ADMIN))

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_clears_expired_grace_periods(self, client, auth_headers, make_tenant, load_tenant, clock):
        await make_tenant("t1")
        await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))
        await client.post("/api/v1/api-keys/rotate", headers=auth_headers("t1"))
        clock.advance(minutes=61)

        resp = await client.post("/api/v1/api-keys/sweep", headers=auth_headers("t1", role=Role.SUPER_ADMIN))

        assert resp.json() == {"cleaned_count": 1, "tenant_ids": ["t1"]}
        tenant = await load_tenant("t1")
        assert tenant.old_api_key_hash is None
        assert tenant.old_api_key_expires_at is None
