"""FastAPI dependency injection for settings, sessions and trust-core services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_core.clock import Clock, utcnow
from billing_core.credentials.vault import CredentialVault
from billing_core.entitlement.cache import SessionVerificationCache
from billing_core.errors import SubscriptionRequired
from billing_core.state.database import create_session_factory, get_engine
from billing_core.state.locks import TenantLockRegistry
from billing_core.subscription.processor import SubscriptionProcessor
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from crm_api.config import CRMSettings, load_settings
from crm_api.services.billing_service import BillingService
from crm_api.services.entitlement_service import EntitlementService
from crm_api.services.stripe_gateway import StripeGateway
from crm_api.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: CRMSettings | None = None


def get_settings() -> CRMSettings:
    """Return the cached :class:`CRMSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[CRMSettings, Depends(get_settings)]


def get_clock() -> Clock:
    return utcnow


ClockDep = Annotated[Clock, Depends(get_clock)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: CRMSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = create_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The trust-core services open their own short transactions, so they take
    the factory rather than a request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(
    session_factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Trust-core singletons
# ---------------------------------------------------------------------------

_locks: TenantLockRegistry | None = None
_cache: SessionVerificationCache | None = None
_vault: CredentialVault | None = None
_processor: SubscriptionProcessor | None = None
_gateway: StripeGateway | None = None


def init_trust_core(
    settings: CRMSettings,
    session_factory: async_sessionmaker[AsyncSession],
) -> CredentialVault:
    """Create the lock registry, cache, vault and processor singletons.

    The vault and the processor share one lock registry so that key
    rotation, the sweep and subscription transitions for a tenant are
    serialised against each other.
    """
    global _locks, _cache, _vault, _processor, _gateway  # noqa: PLW0603
    _locks = TenantLockRegistry()
    _cache = SessionVerificationCache(ttl=settings.entitlement_cache_ttl)
    _vault = CredentialVault(
        session_factory,
        locks=_locks,
        grace_period=settings.api_key_grace_period,
    )
    _processor = SubscriptionProcessor(
        session_factory,
        locks=_locks,
        cache=_cache,
        grace_period=settings.payment_grace_period,
    )
    _gateway = StripeGateway(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
        webhook_tolerance_seconds=settings.webhook_tolerance_seconds,
    )
    return _vault


def dispose_trust_core() -> None:
    global _locks, _cache, _vault, _processor, _gateway  # noqa: PLW0603
    if _cache is not None:
        _cache.clear()
    _locks = _cache = _vault = _processor = _gateway = None


_NOT_INITIALISED = "%s has not been initialised. Ensure init_trust_core() is called during application startup."


def get_lock_registry() -> TenantLockRegistry:
    if _locks is None:
        raise RuntimeError(_NOT_INITIALISED % "TenantLockRegistry")
    return _locks


def get_entitlement_cache() -> SessionVerificationCache:
    if _cache is None:
        raise RuntimeError(_NOT_INITIALISED % "SessionVerificationCache")
    return _cache


def get_vault() -> CredentialVault:
    """Return the shared :class:`CredentialVault`."""
    if _vault is None:
        raise RuntimeError(_NOT_INITIALISED % "CredentialVault")
    return _vault


def get_processor() -> SubscriptionProcessor:
    if _processor is None:
        raise RuntimeError(_NOT_INITIALISED % "SubscriptionProcessor")
    return _processor


def get_stripe_gateway() -> StripeGateway:
    if _gateway is None:
        raise RuntimeError(_NOT_INITIALISED % "StripeGateway")
    return _gateway


LocksDep = Annotated[TenantLockRegistry, Depends(get_lock_registry)]
CacheDep = Annotated[SessionVerificationCache, Depends(get_entitlement_cache)]
VaultDep = Annotated[CredentialVault, Depends(get_vault)]
ProcessorDep = Annotated[SubscriptionProcessor, Depends(get_processor)]
GatewayDep = Annotated[StripeGateway, Depends(get_stripe_gateway)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from authenticated request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]


def get_session_key(request: Request) -> str | None:
    """Cache key for the caller's session: the token ``jti``, else ``sub``."""
    return getattr(request.state, "jti", None) or getattr(request.state, "sub", None)


SessionKeyDep = Annotated[str | None, Depends(get_session_key)]

# ---------------------------------------------------------------------------
# Per-request services
# ---------------------------------------------------------------------------


def get_billing_service(
    tenant_id: TenantDep,
    session_factory: SessionFactoryDep,
    gateway: GatewayDep,
    settings: SettingsDep,
    locks: LocksDep,
    clock: ClockDep,
) -> BillingService:
    return BillingService(
        session_factory,
        gateway,
        settings,
        tenant_id=tenant_id,
        locks=locks,
        clock=clock,
    )


BillingServiceDep = Annotated[BillingService, Depends(get_billing_service)]


def get_entitlement_service(
    session_factory: SessionFactoryDep,
    cache: CacheDep,
    clock: ClockDep,
) -> EntitlementService:
    return EntitlementService(session_factory, cache, clock=clock)


EntitlementServiceDep = Annotated[EntitlementService, Depends(get_entitlement_service)]


def get_webhook_service(gateway: GatewayDep, processor: ProcessorDep) -> WebhookService:
    return WebhookService(gateway, processor)


WebhookServiceDep = Annotated[WebhookService, Depends(get_webhook_service)]

# ---------------------------------------------------------------------------
# RBAC role (populated by AuthenticationMiddleware from JWT "role" claim)
# ---------------------------------------------------------------------------

from billing_core.models.roles import Role  # noqa: E402

from crm_api.middleware.rbac import get_user_role  # noqa: E402

RoleDep = Annotated[Role, Depends(get_user_role)]

# ---------------------------------------------------------------------------
# Subscription gating
# ---------------------------------------------------------------------------


async def require_entitlement(
    request: Request,
    service: EntitlementServiceDep,
    tenant_id: TenantDep,
    role: RoleDep,
    session_key: SessionKeyDep,
) -> None:
    """Dependency that lets the request through only if the gate allows it.

    Raises
    ------
    SubscriptionRequired
        Mapped to HTTP 402 with the deny reason as ``error_code``.
    """
    decision = await service.check(tenant_id=tenant_id, role=role, session_key=session_key)
    if not decision.allowed:
        raise SubscriptionRequired(
            f"Tenant {tenant_id} denied on {request.url.path}: {decision.reason}",
            error_code=decision.reason,
        )


EntitledDep = Annotated[None, Depends(require_entitlement)]
