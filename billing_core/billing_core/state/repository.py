"""Repository classes providing access to the trust-core state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.state.database import dialect_name
from billing_core.state.tables import AuditLogTable, ProcessedEventTable, TenantTable

logger = logging.getLogger(__name__)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str] | None = None,
    constraint: str | None = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection (mutually exclusive with *constraint*).
    constraint:
        Named constraint for conflict detection (mutually exclusive with *index_elements*).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    conflict_kwargs: dict[str, Any] = {}
    if constraint is not None:
        conflict_kwargs["constraint"] = constraint
    elif index_elements is not None:
        conflict_kwargs["index_elements"] = index_elements

    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_nothing(**conflict_kwargs)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_nothing(**conflict_kwargs)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantRepository:
    """Reads and writes of the ``tenants`` row."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str, *, for_update: bool = False) -> TenantTable | None:
        """Return the tenant row, optionally taking a row lock.

        ``for_update`` emits ``SELECT ... FOR UPDATE`` on PostgreSQL; SQLite
        ignores the clause and relies on its single-writer lock.
        """
        stmt = select(TenantTable).where(TenantTable.id == tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def resolve_tenant_id(
        self,
        *,
        stripe_customer_id: str | None,
        tenant_hint: str | None,
    ) -> str | None:
        """Map a billing event onto a tenant id.

        The customer id is authoritative once attached; the metadata hint
        covers the first checkout before the customer is linked.
        """
        if stripe_customer_id:
            result = await self._session.execute(
                select(TenantTable.id).where(TenantTable.stripe_customer_id == stripe_customer_id)
            )
            tenant_id = result.scalar_one_or_none()
            if tenant_id is not None:
                return tenant_id
        if tenant_hint:
            result = await self._session.execute(select(TenantTable.id).where(TenantTable.id == tenant_hint))
            return result.scalar_one_or_none()
        return None

    async def attach_customer(self, tenant_id: str, stripe_customer_id: str) -> bool:
        """Set the customer id only if the tenant has none yet.

        Returns ``True`` when this call attached it.
        """
        result = await self._session.execute(
            update(TenantTable)
            .where(TenantTable.id == tenant_id, TenantTable.stripe_customer_id.is_(None))
            .values(stripe_customer_id=stripe_customer_id, updated_at=datetime.now(UTC))
        )
        return bool(result.rowcount)

    async def list_expired_grace_tenants(self, now: datetime) -> list[str]:
        """Return ids of tenants whose previous-key grace window has elapsed."""
        result = await self._session.execute(
            select(TenantTable.id)
            .where(
                TenantTable.old_api_key_hash.is_not(None),
                TenantTable.old_api_key_expires_at < now,
            )
            .order_by(TenantTable.id)
        )
        return list(result.scalars().all())

    async def clear_expired_old_key(self, tenant_id: str, now: datetime) -> bool:
        """Drop the previous key hash if (and only if) it is still expired.

        The expiry predicate is re-checked in the ``UPDATE`` itself, so a
        rotation that installed a fresh previous key in the meantime is
        left untouched.
        """
        result = await self._session.execute(
            update(TenantTable)
            .where(
                TenantTable.id == tenant_id,
                TenantTable.old_api_key_hash.is_not(None),
                TenantTable.old_api_key_expires_at < now,
            )
            .values(old_api_key_hash=None, old_api_key_expires_at=None, updated_at=now)
        )
        return bool(result.rowcount)


# ---------------------------------------------------------------------------
# Processed events
# ---------------------------------------------------------------------------


class ProcessedEventRepository:
    """Insert-once access to the ``processed_events`` ledger table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(self, event_id: str, event_type: str, processed_at: datetime) -> bool:
        """Insert the event row; return ``True`` if this call created it."""
        result = await _dialect_upsert_nothing(
            self._session,
            ProcessedEventTable,
            {"event_id": event_id, "event_type": event_type, "processed_at": processed_at},
            index_elements=["event_id"],
        )
        return result.rowcount > 0

    async def exists(self, event_id: str) -> bool:
        result = await self._session.execute(
            select(ProcessedEventTable.event_id).where(ProcessedEventTable.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(ProcessedEventTable).where(ProcessedEventTable.processed_at < cutoff)
        )
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each audit entry is linked to its predecessor via ``previous_hash``, forming
    a per-tenant tamper-evident chain.  ``entry_hash`` is a SHA-256 digest of
    the entry's content fields concatenated with the previous hash, so any
    modification to an existing row will break the chain for all subsequent
    entries.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def _compute_hash(
        tenant_id: str,
        actor: str | None,
        action: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """Compute SHA-256 hash over entry content fields.

        ``None`` values are represented as the empty string in the hash input.
        """
        parts = [
            tenant_id,
            actor or "",
            action,
            entity_type or "",
            entity_id or "",
            json.dumps(metadata, sort_keys=True, default=str) if metadata else "",
            previous_hash or "",
            created_at.isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    def _chain_lock_id(self) -> int:
        # Stable across processes, unlike the builtin ``hash()``.
        digest = hashlib.sha256(f"audit_chain_{self._tenant_id}".encode()).digest()
        return int.from_bytes(digest[:4], "big") & 0x7FFFFFFF

    async def get_latest_hash(self) -> str | None:
        """Get the entry_hash of the most recent audit log entry for this tenant."""
        stmt = (
            select(AuditLogTable.entry_hash)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        actor: str | None,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Write an audit entry. Returns the entry ID."""
        entry_id = uuid.uuid4().hex
        now = datetime.now(UTC)

        # Serialise chain appends per tenant so two writers cannot fork it.
        if "postgresql" in dialect_name(self._session):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_id)"),
                {"lock_id": self._chain_lock_id()},
            )

        previous_hash = await self.get_latest_hash()
        entry_hash = self._compute_hash(
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            previous_hash=previous_hash,
            created_at=now,
        )

        row = AuditLogTable(
            id=entry_id,
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=metadata,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: tenant=%s actor=%s action=%s entity=%s/%s",
            self._tenant_id,
            actor or "system",
            action,
            entity_type or "-",
            entity_id or "-",
        )
        return entry_id

    async def query(
        self,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Query audit log entries, most recent first."""
        stmt = select(AuditLogTable).where(AuditLogTable.tenant_id == self._tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= since)
        stmt = stmt.order_by(AuditLogTable.created_at.desc()).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Verify the hash chain integrity for this tenant.

        Returns
        -------
        tuple[bool, int]
            ``(is_valid, entries_checked)`` where ``is_valid`` is ``True``
            only if every entry's hash matches and the chain links are intact.
        """
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain broken at entry %s: expected previous_hash=%s, got %s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            expected = self._compute_hash(
                tenant_id=entry.tenant_id,
                actor=entry.actor,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                metadata=entry.metadata_json,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected:
                logger.warning("Audit entry %s hash mismatch (tampered?)", entry.id)
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)
