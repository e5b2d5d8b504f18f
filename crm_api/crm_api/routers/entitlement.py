"""Entitlement endpoint: the gate decision for the current caller."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request

from crm_api.dependencies import EntitlementServiceDep, SessionKeyDep
from crm_api.middleware.rbac import get_user_role
from crm_api.schemas import EntitlementResponse
from crm_api.services.entitlement_service import decision_response

router = APIRouter(tags=["entitlement"])


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    request: Request,
    service: EntitlementServiceDep,
    session_key: SessionKeyDep,
    requires_subscription: bool = Query(True, description="Evaluate as a subscription-gated resource."),
) -> EntitlementResponse:
    """Return whether the caller may use subscription-gated features.

    Anonymous callers get a deny decision that redirects to login rather
    than a 401, so front ends can use this as their single routing check.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    role = get_user_role(request) if tenant_id is not None else None
    decision = await service.check(
        tenant_id=tenant_id,
        role=role,
        session_key=session_key,
        requires_subscription=requires_subscription,
    )
    return decision_response(decision)
