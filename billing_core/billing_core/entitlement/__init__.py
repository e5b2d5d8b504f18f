"""Entitlement gate and its session verification cache."""

from billing_core.entitlement.cache import CachedVerification, SessionVerificationCache
from billing_core.entitlement.gate import (
    CacheAction,
    EntitlementDecision,
    Redirect,
    evaluate,
    is_grace_period_active,
)

__all__ = [
    "CacheAction",
    "CachedVerification",
    "EntitlementDecision",
    "Redirect",
    "SessionVerificationCache",
    "evaluate",
    "is_grace_period_active",
]
