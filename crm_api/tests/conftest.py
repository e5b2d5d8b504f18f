"""Shared fixtures for CRM API tests.

The application runs against a file-backed SQLite database with the real
trust-core services; only the Stripe SDK client is replaced by a mock.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from billing_core.credentials.vault import CredentialVault
from billing_core.entitlement.cache import SessionVerificationCache
from billing_core.models.roles import Role
from billing_core.state.database import get_engine
from billing_core.state.locks import TenantLockRegistry
from billing_core.state.sqlite_adapter import create_local_tables
from billing_core.state.tables import TenantTable
from billing_core.subscription.processor import SubscriptionProcessor
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_api.config import CRMSettings
from crm_api.dependencies import (
    get_clock,
    get_entitlement_cache,
    get_lock_registry,
    get_processor,
    get_session_factory,
    get_settings,
    get_stripe_gateway,
    get_vault,
)
from crm_api.main import create_app
from crm_api.security import TokenManager
from crm_api.services.stripe_gateway import StripeGateway

TEST_JWT_SECRET = "test-secret-key-for-crm-tests"
TEST_WEBHOOK_SECRET = "whsec_test_secret"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Settings and persistence
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path) -> CRMSettings:
    """Return a settings object suitable for testing."""
    return CRMSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        jwt_secret=SecretStr(TEST_JWT_SECRET),
        stripe_secret_key=SecretStr("sk_test_dummy"),
        stripe_webhook_secret=SecretStr(TEST_WEBHOOK_SECRET),
        stripe_price_id="price_test_monthly",
        app_base_url="https://crm.example.test",
        cors_origins=["http://localhost:3000"],
        sweep_enabled=False,
    )


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def engine(test_settings: CRMSettings):
    engine = get_engine(test_settings.database_url)
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
def make_tenant(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[None]]:
    """Return a coroutine function that inserts a tenant row."""

    async def _make(tenant_id: str, **fields: Any) -> None:
        fields.setdefault("name", f"Clinic {tenant_id}")
        fields.setdefault("subscription_status", "active")
        async with session_factory() as session:
            session.add(TenantTable(id=tenant_id, **fields))
            await session.commit()

    return _make


@pytest.fixture()
def load_tenant(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[str], Awaitable[TenantTable | None]]:
    async def _load(tenant_id: str) -> TenantTable | None:
        async with session_factory() as session:
            return await session.get(TenantTable, tenant_id)

    return _load


# ---------------------------------------------------------------------------
# Trust-core services
# ---------------------------------------------------------------------------


@pytest.fixture()
def locks() -> TenantLockRegistry:
    return TenantLockRegistry()


@pytest.fixture()
def cache(clock: FrozenClock) -> SessionVerificationCache:
    return SessionVerificationCache(clock=clock)


@pytest.fixture()
def vault(session_factory, locks, clock) -> CredentialVault:
    return CredentialVault(session_factory, locks=locks, clock=clock, grace_period=timedelta(minutes=60))


@pytest.fixture()
def processor(session_factory, locks, cache, clock) -> SubscriptionProcessor:
    return SubscriptionProcessor(
        session_factory,
        locks=locks,
        cache=cache,
        clock=clock,
        grace_period=timedelta(days=7),
    )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


@pytest.fixture()
def stripe_client() -> MagicMock:
    """A stand-in for ``stripe.StripeClient`` with the async methods we call."""
    client = MagicMock()
    client.v1.customers.create_async = AsyncMock(return_value=MagicMock(id="cus_new"))
    client.v1.checkout.sessions.create_async = AsyncMock(
        return_value=MagicMock(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")
    )
    client.v1.billing_portal.sessions.create_async = AsyncMock(
        return_value=MagicMock(url="https://billing.stripe.test/session")
    )
    client.v1.invoices.list_async = AsyncMock(return_value=MagicMock(data=[]))
    return client


@pytest.fixture()
def gateway(test_settings: CRMSettings, stripe_client: MagicMock) -> StripeGateway:
    return StripeGateway(
        test_settings.stripe_secret_key,
        webhook_secret=test_settings.stripe_webhook_secret,
        timeout_seconds=test_settings.stripe_timeout_seconds,
        webhook_tolerance_seconds=test_settings.webhook_tolerance_seconds,
        client=stripe_client,
    )


def _sign_payload(
    payload: Any,
    *,
    secret: str = TEST_WEBHOOK_SECRET,
    timestamp: int | None = None,
) -> tuple[bytes, str]:
    """Serialise *payload* and build a matching ``Stripe-Signature`` header."""
    body = json.dumps(payload).encode("utf-8")
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{ts}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    return body, f"t={ts},v1={signature}"


@pytest.fixture()
def sign_webhook() -> Callable[..., tuple[bytes, str]]:
    return _sign_payload


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings, session_factory, locks, cache, vault, processor, gateway, clock):
    """Create the FastAPI app wired to the test database and mock Stripe client."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_lock_registry] = lambda: locks
    application.dependency_overrides[get_entitlement_cache] = lambda: cache
    application.dependency_overrides[get_vault] = lambda: vault
    application.dependency_overrides[get_processor] = lambda: processor
    application.dependency_overrides[get_stripe_gateway] = lambda: gateway
    application.dependency_overrides[get_clock] = lambda: clock
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def token_manager() -> TokenManager:
    return TokenManager(SecretStr(TEST_JWT_SECRET))


@pytest.fixture()
def auth_headers(token_manager: TokenManager) -> Callable[..., dict[str, str]]:
    """Return a helper that builds bearer headers for a tenant and role."""

    def _headers(tenant_id: str = "t1", role: Role = Role.CLINIC_ADMIN, sub: str = "user-1") -> dict[str, str]:
        token = token_manager.issue_token(sub=sub, tenant_id=tenant_id, role=role)
        return {"Authorization": f"Bearer {token}"}

    return _headers
