"""Idempotency ledger for external billing events."""

from billing_core.ledger.event_ledger import EventLedger

__all__ = ["EventLedger"]
