"""Machine-to-machine endpoints authenticated by tenant API key."""

from __future__ import annotations

import logging

from billing_core.errors import AuthenticationFailure
from billing_core.models.roles import Role
from fastapi import APIRouter, Header

from crm_api.dependencies import EntitlementServiceDep, VaultDep
from crm_api.schemas import WhoAmIResponse
from crm_api.services.entitlement_service import decision_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.get("/whoami", response_model=WhoAmIResponse)
async def whoami(
    vault: VaultDep,
    entitlement: EntitlementServiceDep,
    x_tenant_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> WhoAmIResponse:
    """Verify ``X-API-Key`` for ``X-Tenant-ID`` and report the tenant's entitlement.

    Both the current key and, during its grace window, the previous key are
    accepted.  Any failure is reported as the same 401 so callers cannot
    probe which tenants exist.
    """
    if not x_tenant_id or not x_api_key:
        raise AuthenticationFailure("Missing X-Tenant-ID or X-API-Key header")
    if not await vault.verify(x_tenant_id, x_api_key):
        raise AuthenticationFailure(f"API key rejected for tenant {x_tenant_id}")

    decision = await entitlement.check(tenant_id=x_tenant_id, role=Role.USER, session_key=None)
    return WhoAmIResponse(tenant_id=x_tenant_id, entitlement=decision_response(decision))
