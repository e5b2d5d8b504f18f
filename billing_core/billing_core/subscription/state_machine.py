"""Pure subscription-status transition function.

Given a snapshot of a tenant and a verified billing event, :func:`transition`
returns the field changes to persist and the audit entry to emit.  It does
no I/O, which keeps every branch testable without a database.

Dead ends: ``suspended`` and ``cancelled`` tenants only leave their state
through a completed checkout; every other event on them is a logged no-op so
that late or out-of-order deliveries cannot resurrect a cancelled account.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from billing_core.audit import AuditAction
from billing_core.models.events import BillingEvent, EventType
from billing_core.models.subscription import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    SubscriptionStatus,
    normalize_status,
)

logger = logging.getLogger(__name__)

# Trial length granted on a tenant's first checkout.
TRIAL_PERIOD_DAYS = 14

# Processor subscription statuses mapped onto the local vocabulary.  Values
# missing here (``incomplete`` for example) leave the tenant unchanged.
_EXTERNAL_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


class TenantSnapshot(BaseModel):
    """The tenant fields a transition reads."""

    tenant_id: str
    status: SubscriptionStatus | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    grace_period_ends_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> TenantSnapshot:
        return cls(
            tenant_id=row.id,
            status=normalize_status(row.subscription_status),
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            grace_period_ends_at=row.grace_period_ends_at,
        )


class Transition(BaseModel):
    """Result of applying one event to one tenant snapshot.

    ``changes`` maps ``tenants`` column names to their new values.  When
    ``ignored_reason`` is set nothing is written.
    """

    changes: dict[str, Any] = Field(default_factory=dict)
    new_status: SubscriptionStatus | None = None
    audit_action: str | None = None
    audit_details: dict[str, Any] = Field(default_factory=dict)
    ignored_reason: str | None = None

    @property
    def applied(self) -> bool:
        return self.ignored_reason is None

    @property
    def invalidates_cache(self) -> bool:
        """Whether cached "entitled" verdicts for the tenant must be dropped."""
        return self.new_status is not None and self.new_status not in ENTITLED_STATUSES

    @classmethod
    def ignore(cls, reason: str) -> Transition:
        return cls(ignored_reason=reason)


def map_external_status(raw: str | None) -> SubscriptionStatus | None:
    """Translate a processor subscription status; ``None`` if unmapped."""
    if not raw:
        return None
    return _EXTERNAL_STATUS_MAP.get(raw.strip().lower())


def trial_period_days_for(status: str | SubscriptionStatus | None) -> int:
    """Trial days to grant on a new checkout for a tenant in *status*.

    Only a tenant that has never been billed (``inactive``) gets a trial;
    everyone else gets zero, so repeated checkouts cannot farm trials.
    """
    return TRIAL_PERIOD_DAYS if normalize_status(status) is SubscriptionStatus.INACTIVE else 0


def transition(
    snapshot: TenantSnapshot,
    event: BillingEvent,
    *,
    now: datetime,
    grace_period: timedelta,
) -> Transition:
    """Compute the effect of *event* on the tenant described by *snapshot*.

    Parameters
    ----------
    snapshot:
        Current tenant state, read under the tenant's row lock.
    event:
        The verified billing event.
    now:
        Reference time for starting the payment grace timer.
    grace_period:
        Length of the past_due grace window.
    """
    kind = event.known_type
    if kind is None:
        logger.info("Ignoring unhandled billing event type %s (%s)", event.event_type, event.event_id)
        return Transition.ignore("unhandled_event_type")

    if snapshot.status in TERMINAL_STATUSES and kind is not EventType.CHECKOUT_COMPLETED:
        logger.info(
            "Tenant %s is %s; event %s (%s) does not reactivate it",
            snapshot.tenant_id,
            snapshot.status.value if snapshot.status else None,
            event.event_type,
            event.event_id,
        )
        return Transition.ignore("terminal_status")

    handler = _HANDLERS[kind]
    return handler(snapshot, event, now, grace_period)


# ---------------------------------------------------------------------------
# Per-event handlers
# ---------------------------------------------------------------------------


def _checkout_completed(
    snapshot: TenantSnapshot, event: BillingEvent, now: datetime, grace_period: timedelta
) -> Transition:
    status = SubscriptionStatus.TRIALING if event.trial_period_days > 0 else SubscriptionStatus.ACTIVE
    changes: dict[str, Any] = {"subscription_status": status.value, "grace_period_ends_at": None}

    customer_id = event.customer_id
    if customer_id and snapshot.stripe_customer_id is None:
        changes["stripe_customer_id"] = customer_id
    elif customer_id and customer_id != snapshot.stripe_customer_id:
        # The customer id is set once; a mismatch points at a setup problem.
        logger.warning(
            "Checkout for tenant %s used customer %s but tenant is linked to %s; keeping existing link",
            snapshot.tenant_id,
            customer_id,
            snapshot.stripe_customer_id,
        )
    if event.subscription_id:
        changes["stripe_subscription_id"] = event.subscription_id

    return Transition(
        changes=changes,
        new_status=status,
        audit_action=AuditAction.SUBSCRIPTION_ACTIVATED,
        audit_details={
            "stripe_subscription_id": event.subscription_id,
            "trial_period_days": event.trial_period_days,
            "previous_status": snapshot.status.value if snapshot.status else None,
        },
    )


def _payment_succeeded(
    snapshot: TenantSnapshot, event: BillingEvent, now: datetime, grace_period: timedelta
) -> Transition:
    changes: dict[str, Any] = {
        "subscription_status": SubscriptionStatus.ACTIVE.value,
        "grace_period_ends_at": None,
    }
    period_end = event.period_end
    if period_end is not None:
        changes["subscription_current_period_end"] = period_end
    return Transition(
        changes=changes,
        new_status=SubscriptionStatus.ACTIVE,
        audit_action=AuditAction.PAYMENT_SUCCEEDED,
        audit_details={
            "invoice_id": event.data_object.get("id"),
            "amount_paid": event.data_object.get("amount_paid"),
            "period_end": period_end.isoformat() if period_end else None,
        },
    )


def _grace_deadline(snapshot: TenantSnapshot, now: datetime, grace_period: timedelta) -> datetime:
    # A retry failure must not extend a timer that is already running.
    if snapshot.status is SubscriptionStatus.PAST_DUE and snapshot.grace_period_ends_at is not None:
        return snapshot.grace_period_ends_at
    return now + grace_period


def _payment_failed(
    snapshot: TenantSnapshot, event: BillingEvent, now: datetime, grace_period: timedelta
) -> Transition:
    deadline = _grace_deadline(snapshot, now, grace_period)
    return Transition(
        changes={
            "subscription_status": SubscriptionStatus.PAST_DUE.value,
            "grace_period_ends_at": deadline,
        },
        new_status=SubscriptionStatus.PAST_DUE,
        audit_action=AuditAction.PAYMENT_FAILED,
        audit_details={
            "invoice_id": event.data_object.get("id"),
            "attempt_count": event.data_object.get("attempt_count"),
            "grace_period_ends_at": deadline.isoformat(),
        },
    )


def _subscription_updated(
    snapshot: TenantSnapshot, event: BillingEvent, now: datetime, grace_period: timedelta
) -> Transition:
    external = event.external_status
    status = map_external_status(external)
    if status is None:
        logger.info(
            "Subscription update for tenant %s has unmapped status %r; no change",
            snapshot.tenant_id,
            external,
        )
        return Transition.ignore("unmapped_external_status")

    changes: dict[str, Any] = {"subscription_status": status.value}
    if status is SubscriptionStatus.PAST_DUE:
        changes["grace_period_ends_at"] = _grace_deadline(snapshot, now, grace_period)
    else:
        changes["grace_period_ends_at"] = None
    if event.subscription_id:
        changes["stripe_subscription_id"] = event.subscription_id
    period_end = event.period_end
    if period_end is not None:
        changes["subscription_current_period_end"] = period_end

    return Transition(
        changes=changes,
        new_status=status,
        audit_action=AuditAction.SUBSCRIPTION_UPDATED,
        audit_details={
            "external_status": external,
            "status": status.value,
            "period_end": period_end.isoformat() if period_end else None,
        },
    )


def _subscription_deleted(
    snapshot: TenantSnapshot, event: BillingEvent, now: datetime, grace_period: timedelta
) -> Transition:
    return Transition(
        changes={
            "subscription_status": SubscriptionStatus.CANCELLED.value,
            "stripe_subscription_id": None,
            "subscription_current_period_end": None,
            "grace_period_ends_at": None,
        },
        new_status=SubscriptionStatus.CANCELLED,
        audit_action=AuditAction.SUBSCRIPTION_CANCELLED,
        audit_details={"stripe_subscription_id": event.subscription_id},
    )


_HANDLERS = {
    EventType.CHECKOUT_COMPLETED: _checkout_completed,
    EventType.PAYMENT_SUCCEEDED: _payment_succeeded,
    EventType.PAYMENT_FAILED: _payment_failed,
    EventType.SUBSCRIPTION_UPDATED: _subscription_updated,
    EventType.SUBSCRIPTION_DELETED: _subscription_deleted,
}
