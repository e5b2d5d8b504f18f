"""Trust-core tunables loaded from environment variables."""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TrustCoreSettings(BaseSettings):
    """Timers and intervals used by the vault, state machine and gate.

    Values are read from ``CRM_``-prefixed environment variables so that the
    core and the HTTP service share one namespace.
    """

    model_config = SettingsConfigDict(
        env_prefix="CRM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Dual-key window after an API key rotation.
    api_key_grace_minutes: int = Field(default=60, ge=0)

    # Access window granted to a past_due tenant after a failed invoice.
    payment_grace_period_days: int = Field(default=7, ge=0)

    # Lifetime of a positive entitlement verdict in the session cache.
    entitlement_cache_ttl_minutes: int = Field(default=30, ge=1)

    # Cadence of the expired-grace-period sweep.
    sweep_interval_seconds: float = Field(default=300.0, gt=0)

    @property
    def api_key_grace_period(self) -> timedelta:
        return timedelta(minutes=self.api_key_grace_minutes)

    @property
    def payment_grace_period(self) -> timedelta:
        return timedelta(days=self.payment_grace_period_days)

    @property
    def entitlement_cache_ttl(self) -> timedelta:
        return timedelta(minutes=self.entitlement_cache_ttl_minutes)
