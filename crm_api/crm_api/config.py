"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from billing_core.config import TrustCoreSettings
from pydantic import SecretStr, model_validator
from pydantic_settings import SettingsConfigDict


class CRMSettings(TrustCoreSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``CRM_`` (e.g. ``CRM_DATABASE_URL=postgresql+asyncpg://...``) or through a
    ``.env`` file in the working directory.  The timer fields are inherited
    from :class:`TrustCoreSettings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="CRM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000

    # SQLite via aiosqlite for local runs; asyncpg URL in deployment.
    database_url: str = "sqlite+aiosqlite:///.crm/state.db"

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]

    # Whether CORS responses include credentials (cookies, auth headers).
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Bearer token signing.
    jwt_secret: SecretStr = SecretStr("crm-dev-secret-change-in-production")
    jwt_algorithm: str = "HS256"
    token_ttl_seconds: int = 3600

    # Stripe billing integration.
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")
    stripe_price_id: str = ""
    stripe_timeout_seconds: float = 10.0
    webhook_tolerance_seconds: int = 300

    # Return URLs handed to hosted checkout and portal pages.
    app_base_url: str = "http://localhost:3000"

    # Background expiry of API-key grace periods.
    sweep_enabled: bool = True


def load_settings() -> CRMSettings:
    """Construct settings from the environment / ``.env`` file."""
    return CRMSettings()
