"""At-most-once application of billing events.

The claim is a single ``INSERT ... ON CONFLICT DO NOTHING`` keyed by the
processor's event id, so "check" and "record" cannot be separated by a
concurrent delivery.  It runs inside the caller's transaction: if the
caller rolls back (for example because the status write failed) the claim
disappears with it and a redelivery is processed normally.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.clock import Clock, utcnow
from billing_core.state.repository import ProcessedEventRepository

logger = logging.getLogger(__name__)


class EventLedger:
    """Ledger operations bound to one session (and therefore one transaction)."""

    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._repo = ProcessedEventRepository(session)
        self._clock = clock

    async def claim_event(self, event_id: str, event_type: str) -> bool:
        """Record *event_id* as processed.

        Returns
        -------
        bool
            ``True`` if the event had already been claimed, in which case the
            caller must skip every side effect and report success.
        """
        created = await self._repo.insert_if_absent(event_id, event_type, self._clock())
        if not created:
            logger.info("Billing event %s (%s) already processed; skipping", event_id, event_type)
        return not created

    async def is_processed(self, event_id: str) -> bool:
        return await self._repo.exists(event_id)

    async def prune(self, older_than: datetime) -> int:
        """Delete ledger rows processed before *older_than*.

        Only safe for events the processor will no longer redeliver.
        """
        removed = await self._repo.delete_older_than(older_than)
        logger.info("Pruned %d processed billing event(s) older than %s", removed, older_than.isoformat())
        return removed
