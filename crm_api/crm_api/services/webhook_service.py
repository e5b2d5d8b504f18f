"""Inbound Stripe webhook handling.

Signature failures are the only outcome reported to Stripe as an error
(400).  Once the signature is good every delivery is acknowledged with 200,
including processing failures: those are logged at ERROR, and because the
ledger claim rolled back with the failed transaction a redelivery of the
same event is processed afresh.
"""

from __future__ import annotations

import logging

from billing_core.errors import SignatureInvalid
from billing_core.subscription.processor import ProcessingOutcome, ProcessingStatus, SubscriptionProcessor
from pydantic import BaseModel

from crm_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: str | None = None


class WebhookService:
    def __init__(self, gateway: StripeGateway, processor: SubscriptionProcessor) -> None:
        self._gateway = gateway
        self._processor = processor

    async def handle(self, payload: bytes, sig_header: str | None, *, client_host: str | None = None) -> WebhookAck:
        """Verify and apply one webhook delivery.

        Raises
        ------
        SignatureInvalid
            If the signature header is missing or does not verify.
        """
        try:
            event = self._gateway.verify_webhook(payload, sig_header)
        except SignatureInvalid as exc:
            logger.warning("Rejected webhook from %s: %s", client_host or "unknown", exc)
            raise

        try:
            outcome: ProcessingOutcome = await self._processor.process(event)
        except Exception:
            logger.error(
                "Webhook processing failed for event %s (%s); acknowledging, ledger claim rolled back",
                event.event_id,
                event.event_type,
                exc_info=True,
            )
            return WebhookAck(status="error", event_id=event.event_id)

        if outcome.status is ProcessingStatus.DUPLICATE:
            logger.info("Duplicate webhook %s (%s) acknowledged", event.event_id, event.event_type)
        return WebhookAck(status=outcome.status.value, event_id=event.event_id)
