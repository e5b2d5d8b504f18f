"""Domain models for the trust core."""

from billing_core.models.events import BillingEvent, EventType
from billing_core.models.roles import Role, is_admin, parse_role
from billing_core.models.subscription import (
    ENTITLED_STATUSES,
    SubscriptionStatus,
    normalize_status,
)

__all__ = [
    "BillingEvent",
    "ENTITLED_STATUSES",
    "EventType",
    "Role",
    "SubscriptionStatus",
    "is_admin",
    "normalize_status",
    "parse_role",
]
