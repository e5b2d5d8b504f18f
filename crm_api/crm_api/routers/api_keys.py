"""Tenant API-key endpoints: rotation, status and the grace-period sweep."""

from __future__ import annotations

import logging

from billing_core.models.roles import Role
from fastapi import APIRouter, Depends

from crm_api.dependencies import TenantDep, UserDep, VaultDep
from crm_api.middleware.rbac import get_user_role, require_super_admin
from crm_api.schemas import APIKeyRotationResponse, APIKeyStatusResponse, SweepResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api-keys", tags=["api-keys"])

_ROTATION_WARNING = "Store this API key now; it will not be shown again."
_GRACE_NOTE = " The previous key keeps working for {minutes} minutes."


@router.post("/rotate", response_model=APIKeyRotationResponse)
async def rotate_api_key(
    vault: VaultDep,
    tenant_id: TenantDep,
    user: UserDep,
    role: Role = Depends(get_user_role),
) -> APIKeyRotationResponse:
    """Issue a new API key for the caller's tenant.

    The vault enforces the admin role; a plain user receives 403.
    """
    result = await vault.issue_or_rotate(tenant_id, role, actor=user)
    warning = _ROTATION_WARNING
    if result.grace_period_minutes:
        warning += _GRACE_NOTE.format(minutes=result.grace_period_minutes)
    return APIKeyRotationResponse(
        api_key=result.api_key,
        prefix=result.prefix,
        grace_period_minutes=result.grace_period_minutes,
        old_key_expires_at=result.old_key_expires_at,
        rotated_at=result.rotated_at,
        warning=warning,
    )


@router.get("", response_model=APIKeyStatusResponse)
async def get_api_key_status(
    vault: VaultDep,
    tenant_id: TenantDep,
    _role: Role = Depends(get_user_role),
) -> APIKeyStatusResponse:
    status = await vault.get_key_status(tenant_id)
    return APIKeyStatusResponse(**status.model_dump())


@router.post("/sweep", response_model=SweepResponse)
async def sweep_expired_grace_periods(
    vault: VaultDep,
    _role: Role = Depends(require_super_admin),
) -> SweepResponse:
    """Run the expired-grace-period sweep now instead of waiting for the scheduler."""
    result = await vault.sweep_expired_grace_periods()
    return SweepResponse(cleaned_count=result.cleaned_count, tenant_ids=result.tenant_ids)
