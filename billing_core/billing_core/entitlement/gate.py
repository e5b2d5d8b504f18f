"""Entitlement decision table.

:func:`evaluate` is pure and safe to call on every request, any number of
times.  Rules are checked in order and the first match wins:

0. unauthenticated → deny, send to login
1. super admin → allow
2. resource does not require a subscription → allow
3. active / trial / trialing / comped → allow, refresh the session cache
4. past_due inside the grace window → allow, leave the cache alone
5. past_due with the grace window elapsed → deny, send to billing
6. suspended / cancelled / inactive / unknown / no tenant → deny, send to billing
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from billing_core.models.roles import Role
from billing_core.models.subscription import (
    ENTITLED_STATUSES,
    SubscriptionStatus,
    normalize_status,
)


class Redirect(str, Enum):
    LOGIN = "login"
    BILLING = "billing"


class CacheAction(str, Enum):
    """What the caller should do with its session verification cache."""

    REFRESH = "refresh"
    KEEP = "keep"
    INVALIDATE = "invalidate"


class DenyReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    NO_TENANT = "no_tenant"


class AllowReason(str, Enum):
    SUPER_ADMIN = "super_admin"
    NOT_SUBSCRIPTION_GATED = "not_subscription_gated"
    ENTITLED = "entitled"
    GRACE_PERIOD = "grace_period"


class EntitlementDecision(BaseModel):
    allowed: bool
    reason: str
    redirect: Redirect | None = None
    cache_action: CacheAction = CacheAction.KEEP
    status: SubscriptionStatus | None = None


def is_grace_period_active(
    status: str | SubscriptionStatus | None,
    grace_period_ends_at: datetime | None,
    now: datetime,
) -> bool:
    """``True`` while a past_due tenant is still inside its payment grace window."""
    return (
        normalize_status(status) is SubscriptionStatus.PAST_DUE
        and grace_period_ends_at is not None
        and grace_period_ends_at > now
    )


def evaluate(
    *,
    authenticated: bool,
    role: Role | None,
    status: str | SubscriptionStatus | None,
    grace_period_active: bool,
    requires_subscription: bool = True,
) -> EntitlementDecision:
    """Decide whether a request may proceed.

    Parameters
    ----------
    authenticated:
        Whether the caller presented a valid credential.
    role:
        Caller role, if known.
    status:
        Tenant subscription status; ``None`` when the tenant is missing.
    grace_period_active:
        Result of :func:`is_grace_period_active` for the tenant.
    requires_subscription:
        ``False`` for resources open to any authenticated caller.
    """
    if not authenticated:
        return EntitlementDecision(
            allowed=False,
            reason=DenyReason.UNAUTHENTICATED.value,
            redirect=Redirect.LOGIN,
            cache_action=CacheAction.INVALIDATE,
        )

    if role is Role.SUPER_ADMIN:
        return EntitlementDecision(allowed=True, reason=AllowReason.SUPER_ADMIN.value)

    normalized = normalize_status(status)

    if not requires_subscription:
        return EntitlementDecision(
            allowed=True,
            reason=AllowReason.NOT_SUBSCRIPTION_GATED.value,
            status=normalized,
        )

    if normalized in ENTITLED_STATUSES:
        return EntitlementDecision(
            allowed=True,
            reason=AllowReason.ENTITLED.value,
            cache_action=CacheAction.REFRESH,
            status=normalized,
        )

    if normalized is SubscriptionStatus.PAST_DUE:
        if grace_period_active:
            return EntitlementDecision(
                allowed=True,
                reason=AllowReason.GRACE_PERIOD.value,
                cache_action=CacheAction.KEEP,
                status=normalized,
            )
        return EntitlementDecision(
            allowed=False,
            reason=DenyReason.GRACE_PERIOD_EXPIRED.value,
            redirect=Redirect.BILLING,
            cache_action=CacheAction.INVALIDATE,
            status=normalized,
        )

    return EntitlementDecision(
        allowed=False,
        reason=(DenyReason.NO_TENANT if status is None else DenyReason.SUBSCRIPTION_INACTIVE).value,
        redirect=Redirect.BILLING,
        cache_action=CacheAction.INVALIDATE,
        status=normalized,
    )
