"""Inbound billing events as delivered by the payment processor.

Only the fields the state machine reads are modelled; the raw data object is
kept verbatim so new handlers can reach extra attributes without a schema
change.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Processor event types that drive a status transition."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


class BillingEvent(BaseModel):
    """A verified webhook event.

    Construct with :meth:`from_payload` after the signature has been checked.
    """

    event_id: str = Field(..., min_length=1, description="Processor event id (``evt_...``).")
    event_type: str = Field(..., min_length=1, description="Processor event type string.")
    data_object: dict[str, Any] = Field(
        default_factory=dict,
        description="The ``data.object`` payload of the event.",
    )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BillingEvent:
        """Build an event from the decoded JSON body of a webhook delivery.

        Raises
        ------
        ValueError
            If the payload is not a JSON object or has no event id or type.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Webhook payload must be a JSON object, got {type(payload).__name__}")
        data = payload.get("data") or {}
        data_object = data.get("object") if isinstance(data, dict) else None
        return cls(
            event_id=payload.get("id") or "",
            event_type=payload.get("type") or "",
            data_object=data_object if isinstance(data_object, dict) else {},
        )

    @property
    def known_type(self) -> EventType | None:
        try:
            return EventType(self.event_type)
        except ValueError:
            return None

    @property
    def metadata(self) -> dict[str, Any]:
        metadata = self.data_object.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def customer_id(self) -> str | None:
        customer = self.data_object.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        if customer:
            return str(customer)
        # Some events nest the customer inside the subscription object.
        subscription = self.data_object.get("subscription")
        if isinstance(subscription, dict) and subscription.get("customer"):
            return str(subscription["customer"])
        return None

    @property
    def tenant_hint(self) -> str | None:
        """Tenant id stamped into metadata when the checkout session was created.

        Invoices carry the subscription's metadata under
        ``subscription_details``.
        """
        value = self.metadata.get("tenant_id")
        if not value:
            details = self.data_object.get("subscription_details")
            if isinstance(details, dict) and isinstance(details.get("metadata"), dict):
                value = details["metadata"].get("tenant_id")
        return str(value) if value else None

    @property
    def subscription_id(self) -> str | None:
        if self.event_type.startswith("customer.subscription."):
            return self.data_object.get("id")
        subscription = self.data_object.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("id")
        return subscription or None

    @property
    def trial_period_days(self) -> int:
        try:
            return max(int(self.metadata.get("trial_period_days") or 0), 0)
        except (TypeError, ValueError):
            return 0

    @property
    def period_end(self) -> datetime | None:
        """Billing period end carried by the event, if any.

        Subscriptions expose ``current_period_end``; invoices carry it on
        their first line item.
        """
        direct = _timestamp(self.data_object.get("current_period_end"))
        if direct is not None:
            return direct
        lines = self.data_object.get("lines")
        if isinstance(lines, dict):
            items = lines.get("data") or []
            if items and isinstance(items[0], dict):
                period = items[0].get("period") or {}
                return _timestamp(period.get("end"))
        return None

    @property
    def external_status(self) -> str | None:
        status = self.data_object.get("status")
        return str(status) if status else None
