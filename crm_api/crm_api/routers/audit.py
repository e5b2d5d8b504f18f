"""Audit log query and chain-verification endpoints.

Both endpoints require an admin role and an entitled subscription.
"""

from __future__ import annotations

import logging
from datetime import datetime

from billing_core.models.roles import Role
from billing_core.state.repository import AuditRepository
from fastapi import APIRouter, Depends, Query

from crm_api.dependencies import EntitledDep, SessionDep, TenantDep
from crm_api.middleware.rbac import require_admin
from crm_api.schemas import AuditChainResponse, AuditEntryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=list[AuditEntryResponse])
async def query_audit_log(
    session: SessionDep,
    tenant_id: TenantDep,
    _entitled: EntitledDep,
    action: str | None = Query(default=None, description="Filter by action type."),
    since: datetime | None = Query(default=None, description="Only entries after this timestamp."),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_admin),
) -> list[AuditEntryResponse]:
    """Query the append-only audit log, most recent first."""
    repo = AuditRepository(session, tenant_id=tenant_id)
    entries = await repo.query(action=action, since=since, limit=limit, offset=offset)
    return [
        AuditEntryResponse(
            id=entry.id,
            actor=entry.actor,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            metadata=entry.metadata_json,
            created_at=entry.created_at,
        )
        for entry in entries
    ]


@router.get("/verify", response_model=AuditChainResponse)
async def verify_audit_chain(
    session: SessionDep,
    tenant_id: TenantDep,
    _entitled: EntitledDep,
    limit: int = Query(default=1000, ge=1, le=10000),
    _role: Role = Depends(require_admin),
) -> AuditChainResponse:
    """Recompute the tenant's hash chain and report whether it is intact."""
    repo = AuditRepository(session, tenant_id=tenant_id)
    is_valid, checked = await repo.verify_chain(limit=limit)
    if not is_valid:
        logger.warning("Audit chain verification failed for tenant=%s after %d entries", tenant_id, checked)
    return AuditChainResponse(is_valid=is_valid, entries_checked=checked)
