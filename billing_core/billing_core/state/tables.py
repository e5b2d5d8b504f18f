"""SQLAlchemy 2.0 ORM table definitions for the trust-core state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that stays aware on SQLite.

    SQLite stores timestamps without an offset and hands back naive values;
    they are re-tagged as UTC so comparisons against ``datetime.now(UTC)``
    work identically on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all trust-core tables."""


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Billing and entitlement unit (one clinic account).

    ``subscription_status`` is written only by the subscription processor;
    the ``*api_key*`` columns only by the credential vault.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="trial")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    api_key_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    api_key_prefix: Mapped[str | None] = mapped_column(String(8), nullable=True)
    old_api_key_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_api_key_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "(old_api_key_hash IS NULL) = (old_api_key_expires_at IS NULL)",
            name="ck_tenants_old_key_pair",
        ),
        Index("ix_tenants_old_key_expiry", "old_api_key_expires_at"),
    )


# ---------------------------------------------------------------------------
# Processed billing events
# ---------------------------------------------------------------------------


class ProcessedEventTable(Base):
    """Idempotency ledger: one row per external billing event id."""

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_processed_events_processed_at", "processed_at"),)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only audit log with tamper evidence via hash chaining.

    ``entry_hash`` is a SHA-256 digest of the entry's content fields and
    ``previous_hash`` links to the preceding entry of the same tenant.
    ``actor`` is ``NULL`` for system actions such as the grace-period sweep.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(256), nullable=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_audit_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_tenant_action", "tenant_id", "action"),
    )
