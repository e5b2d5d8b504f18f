"""Webhook-driven subscription status state machine."""

from billing_core.subscription.processor import ProcessingOutcome, ProcessingStatus, SubscriptionProcessor
from billing_core.subscription.state_machine import (
    TRIAL_PERIOD_DAYS,
    TenantSnapshot,
    Transition,
    map_external_status,
    trial_period_days_for,
    transition,
)

__all__ = [
    "ProcessingOutcome",
    "ProcessingStatus",
    "SubscriptionProcessor",
    "TRIAL_PERIOD_DAYS",
    "TenantSnapshot",
    "Transition",
    "map_external_status",
    "trial_period_days_for",
    "transition",
]
