"""Subscription status vocabulary and the status groupings the gate relies on."""

from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Local subscription status of a tenant.

    ``canceled`` (American spelling, as sent by Stripe) is not a member; it is
    folded into :attr:`CANCELLED` by :func:`normalize_status`.
    """

    TRIAL = "trial"
    TRIALING = "trialing"
    ACTIVE = "active"
    COMPED = "comped"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


_ALIASES: dict[str, SubscriptionStatus] = {
    "canceled": SubscriptionStatus.CANCELLED,
}

# Statuses that grant access without any timer check.
ENTITLED_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.COMPED,
    }
)

# Dead ends: only a new checkout moves a tenant out of these.
TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    }
)


def normalize_status(raw: str | SubscriptionStatus | None) -> SubscriptionStatus | None:
    """Map a raw status string onto the canonical enum.

    Returns ``None`` for missing or unrecognised values so callers can treat
    them as "no entitlement" instead of crashing on stale rows.
    """
    if raw is None:
        return None
    if isinstance(raw, SubscriptionStatus):
        return raw
    value = raw.strip().lower()
    if value in _ALIASES:
        return _ALIASES[value]
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None
