"""Tests for the background grace-period sweeper."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from billing_core.credentials.vault import SweepResult
from billing_core.models.roles import Role
from sqlalchemy.exc import OperationalError

from crm_api.services.grace_sweeper import GracePeriodSweeper


def _vault(**kwargs) -> MagicMock:
    vault = MagicMock()
    vault.sweep_expired_grace_periods = AsyncMock(**kwargs)
    return vault


class TestGracePeriodSweeper:
    @pytest.mark.asyncio
    async def test_run_once_clears_expired_keys(self, vault, make_tenant, clock):
        await make_tenant("t1")
        await vault.issue_or_rotate("t1", Role.CLINIC_ADMIN, actor="admin")
        await vault.issue_or_rotate("t1", Role.CLINIC_ADMIN, actor="admin")
        clock.advance(minutes=61)

        result = await GracePeriodSweeper(vault).run_once()

        assert result.cleaned_count == 1
        assert result.tenant_ids == ["t1"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        vault = _vault(return_value=SweepResult(cleaned_count=0, tenant_ids=[]))
        sweeper = GracePeriodSweeper(vault, interval_seconds=0.01)

        await sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.running
        assert vault.sweep_expired_grace_periods.await_count >= 1

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self):
        sweeper = GracePeriodSweeper(_vault(return_value=SweepResult(cleaned_count=0, tenant_ids=[])))

        await sweeper.start()
        first_task = sweeper._task
        await sweeper.start()

        assert sweeper._task is first_task
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_database_error_does_not_stop_loop(self):
        outage = OperationalError("SELECT", {}, Exception("database is locked"))
        vault = _vault(side_effect=[outage, SweepResult(cleaned_count=0, tenant_ids=[])] * 50)
        sweeper = GracePeriodSweeper(vault, interval_seconds=0.01)

        await sweeper.start()
        await asyncio.sleep(0.05)
        task = sweeper._task
        await sweeper.stop()

        assert vault.sweep_expired_grace_periods.await_count >= 2
        assert task.cancelled() or task.done()
