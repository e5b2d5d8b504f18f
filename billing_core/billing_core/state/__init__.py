"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import create_session_factory, get_engine
from billing_core.state.locks import TenantLockRegistry
from billing_core.state.repository import (
    AuditRepository,
    ProcessedEventRepository,
    TenantRepository,
)

__all__ = [
    "AuditRepository",
    "ProcessedEventRepository",
    "TenantLockRegistry",
    "TenantRepository",
    "create_session_factory",
    "get_engine",
]
