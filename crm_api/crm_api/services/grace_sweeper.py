"""Background task that expires API-key grace periods.

Runs as an ``asyncio`` background task and calls
:meth:`CredentialVault.sweep_expired_grace_periods` every
``sweep_interval_seconds``.  The sweep is idempotent, so overlapping
replicas running it concurrently only duplicate work, never effects.
"""

from __future__ import annotations

import asyncio
import logging

from billing_core.credentials.vault import CredentialVault, SweepResult
from sqlalchemy.exc import InterfaceError, OperationalError

logger = logging.getLogger(__name__)


class GracePeriodSweeper:
    """AsyncIO background task for the expired-grace-period sweep.

    Parameters
    ----------
    vault:
        The credential vault whose sweep is run.
    interval_seconds:
        Pause between sweeps.
    """

    def __init__(self, vault: CredentialVault, *, interval_seconds: float = 300.0) -> None:
        self._vault = vault
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the sweep loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the sweep background task."""
        if self._running:
            logger.warning("GracePeriodSweeper already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("GracePeriodSweeper started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("GracePeriodSweeper stopped")

    async def run_once(self) -> SweepResult:
        return await self._vault.sweep_expired_grace_periods()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                # Transient database trouble; the next pass retries.
                logger.error("GracePeriodSweeper database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("GracePeriodSweeper unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)
