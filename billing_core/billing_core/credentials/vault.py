"""Credential vault: zero-downtime rotation of tenant API keys.

Rotation keeps exactly one previous key alive for a bounded grace window so
integrations can switch over without an outage.  Only bcrypt hashes and
8-character prefixes are persisted; the plaintext key leaves this module
once, in the :class:`RotationResult` returned to the caller.

All read-modify-write work on a tenant row happens while holding that
tenant's lock from :class:`~billing_core.state.locks.TenantLockRegistry`,
so a rotation and a sweep (or two rotations) for the same tenant never
interleave.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.audit import AuditAction, record_audit
from billing_core.clock import Clock, utcnow
from billing_core.credentials.keys import check_api_key, generate_api_key, hash_api_key, key_prefix
from billing_core.errors import NotFound, PermissionDenied
from billing_core.models.roles import Role, is_admin
from billing_core.state.locks import TenantLockRegistry
from billing_core.state.repository import TenantRepository

logger = logging.getLogger(__name__)

_DEFAULT_GRACE_PERIOD = timedelta(minutes=60)


class RotationResult(BaseModel):
    """Outcome of :meth:`CredentialVault.issue_or_rotate`.

    ``api_key`` is the only copy of the plaintext key anywhere in the system.
    """

    tenant_id: str
    api_key: str = Field(..., repr=False)
    prefix: str
    grace_period_minutes: int = Field(
        ...,
        description="Minutes the previous key stays valid; 0 when there was no previous key.",
    )
    old_key_expires_at: datetime | None = None
    rotated_at: datetime


class SweepResult(BaseModel):
    """Outcome of :meth:`CredentialVault.sweep_expired_grace_periods`."""

    cleaned_count: int = 0
    tenant_ids: list[str] = Field(default_factory=list)


class KeyStatus(BaseModel):
    """Non-secret view of a tenant's credentials."""

    tenant_id: str
    has_key: bool
    prefix: str | None = None
    grace_period_active: bool = False
    old_key_expires_at: datetime | None = None


class CredentialVault:
    """Issue, rotate, verify and expire tenant API keys.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each operation owns its transactions.
    locks:
        Per-tenant lock registry shared with every other tenant writer.
    clock:
        Time source, injectable for tests.
    grace_period:
        How long the previous key stays valid after a rotation.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        locks: TenantLockRegistry | None = None,
        clock: Clock = utcnow,
        grace_period: timedelta = _DEFAULT_GRACE_PERIOD,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks or TenantLockRegistry()
        self._clock = clock
        self._grace_period = grace_period

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def issue_or_rotate(
        self,
        tenant_id: str,
        requester_role: Role,
        *,
        actor: str | None = None,
    ) -> RotationResult:
        """Generate a new key for *tenant_id* and demote the current one.

        Parameters
        ----------
        tenant_id:
            Tenant whose key is issued or rotated.
        requester_role:
            Role of the caller; must be ``CLINIC_ADMIN`` or ``SUPER_ADMIN``.
        actor:
            Caller identity recorded in the audit entry.

        Returns
        -------
        RotationResult
            Contains the plaintext key; the caller must hand it to the user
            and must not persist or log it.

        Raises
        ------
        PermissionDenied
            If *requester_role* is not administrative.
        NotFound
            If the tenant does not exist.
        """
        if not is_admin(requester_role):
            logger.info(
                "API key rotation denied: tenant=%s actor=%s role=%s",
                tenant_id,
                actor,
                requester_role.claim,
            )
            raise PermissionDenied("Administrative role required to rotate API keys")

        api_key = generate_api_key()
        prefix = key_prefix(api_key)
        # bcrypt is deliberately slow; keep it off the event loop.
        new_hash = await asyncio.to_thread(hash_api_key, api_key)

        async with self._locks.hold(tenant_id):
            async with self._session_factory() as session:
                async with session.begin():
                    tenant = await TenantRepository(session).get(tenant_id, for_update=True)
                    if tenant is None:
                        raise NotFound(f"Tenant {tenant_id} not found")

                    now = self._clock()
                    old_prefix = tenant.api_key_prefix
                    old_expires_at: datetime | None = None
                    if tenant.api_key_hash and self._grace_period > timedelta(0):
                        old_expires_at = now + self._grace_period
                        tenant.old_api_key_hash = tenant.api_key_hash
                    else:
                        tenant.old_api_key_hash = None
                    tenant.old_api_key_expires_at = old_expires_at
                    tenant.api_key_hash = new_hash
                    tenant.api_key_prefix = prefix
                    tenant.updated_at = now

            # Written before the lock is released so audit order matches
            # rotation order for this tenant.
            await record_audit(
                self._session_factory,
                tenant_id=tenant_id,
                actor=actor,
                action=AuditAction.API_KEY_REGENERATED,
                entity_type="tenant",
                entity_id=tenant_id,
                metadata={
                    "new_prefix": prefix,
                    "old_prefix": old_prefix,
                    "grace_period_expires_at": old_expires_at.isoformat() if old_expires_at else None,
                },
            )

        grace_minutes = int(self._grace_period.total_seconds() // 60) if old_expires_at else 0
        logger.info(
            "API key rotated: tenant=%s prefix=%s grace_minutes=%d",
            tenant_id,
            prefix,
            grace_minutes,
        )
        return RotationResult(
            tenant_id=tenant_id,
            api_key=api_key,
            prefix=prefix,
            grace_period_minutes=grace_minutes,
            old_key_expires_at=old_expires_at,
            rotated_at=now,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, tenant_id: str, candidate: str) -> bool:
        """Return ``True`` if *candidate* is the tenant's current key, or its
        previous key while that key's grace window is still open."""
        async with self._session_factory() as session:
            tenant = await TenantRepository(session).get(tenant_id)
            current_hash = tenant.api_key_hash if tenant is not None else None
            old_hash = tenant.old_api_key_hash if tenant is not None else None
            old_expires_at = tenant.old_api_key_expires_at if tenant is not None else None

        now = self._clock()
        if old_expires_at is None or old_expires_at <= now:
            old_hash = None

        matched = await asyncio.to_thread(_check_candidate, candidate, current_hash, old_hash)
        if not matched:
            logger.info("API key verification failed for tenant=%s", tenant_id)
        return matched

    async def get_key_status(self, tenant_id: str) -> KeyStatus:
        """Return the tenant's key prefix and grace-window state.

        Raises
        ------
        NotFound
            If the tenant does not exist.
        """
        async with self._session_factory() as session:
            tenant = await TenantRepository(session).get(tenant_id)
        if tenant is None:
            raise NotFound(f"Tenant {tenant_id} not found")
        now = self._clock()
        grace_active = (
            tenant.old_api_key_hash is not None
            and tenant.old_api_key_expires_at is not None
            and tenant.old_api_key_expires_at > now
        )
        return KeyStatus(
            tenant_id=tenant_id,
            has_key=tenant.api_key_hash is not None,
            prefix=tenant.api_key_prefix,
            grace_period_active=grace_active,
            old_key_expires_at=tenant.old_api_key_expires_at if grace_active else None,
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep_expired_grace_periods(self) -> SweepResult:
        """Clear previous-key hashes whose grace window has elapsed.

        Idempotent: a second run with no newly expired tenants clears nothing.
        Each tenant is cleared under its own lock with a conditional update,
        so a concurrent rotation for that tenant is never undone.
        """
        now = self._clock()
        async with self._session_factory() as session:
            candidates = await TenantRepository(session).list_expired_grace_tenants(now)

        cleaned: list[str] = []
        for tenant_id in candidates:
            async with self._locks.hold(tenant_id):
                async with self._session_factory() as session:
                    async with session.begin():
                        cleared = await TenantRepository(session).clear_expired_old_key(tenant_id, now)
                if not cleared:
                    continue
                cleaned.append(tenant_id)
                await record_audit(
                    self._session_factory,
                    tenant_id=tenant_id,
                    actor=None,
                    action=AuditAction.API_KEY_GRACE_PERIOD_EXPIRED,
                    entity_type="tenant",
                    entity_id=tenant_id,
                    metadata={"swept_at": now.isoformat()},
                )

        if cleaned:
            logger.info("Grace-period sweep cleared %d tenant(s): %s", len(cleaned), cleaned)
        else:
            logger.debug("Grace-period sweep found nothing to clear")
        return SweepResult(cleaned_count=len(cleaned), tenant_ids=cleaned)


def _check_candidate(candidate: str, current_hash: str | None, old_hash: str | None) -> bool:
    if check_api_key(candidate, current_hash):
        return True
    if old_hash is not None:
        return check_api_key(candidate, old_hash)
    return False
