"""Tests for periodic maintenance."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.oura.base import SyncMode, SyncRun, SyncStatus
from src.oura.subscriptions import ReconcileReport
from src.oura.sync.maintenance import (
    ABANDONED_RUN_MESSAGE,
    reclaim_abandoned_runs,
    run_scheduled_maintenance,
)
from src.oura.tests.fakes import INSTALL_ID

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _run(run_id: str, started_at: datetime, status: SyncStatus = SyncStatus.RUNNING) -> SyncRun:
    return SyncRun(
        id=run_id, install_id=INSTALL_ID, mode=SyncMode.DELTA, status=status, started_at=started_at
    )


@pytest.mark.asyncio
async def test_reclaims_only_old_running_runs(store, sync_config):
    store.runs = {
        "old": _run("old", NOW - timedelta(hours=2)),
        "fresh": _run("fresh", NOW - timedelta(minutes=5)),
        "done": _run("done", NOW - timedelta(hours=3), SyncStatus.COMPLETED),
    }

    assert await reclaim_abandoned_runs(store, sync_config, now=NOW) == 1

    assert store.runs["old"].status == SyncStatus.FAILED
    assert store.runs["old"].error_summary == ABANDONED_RUN_MESSAGE
    assert store.runs["old"].finished_at == NOW
    assert store.runs["fresh"].status == SyncStatus.RUNNING
    assert store.runs["done"].status == SyncStatus.COMPLETED


@pytest.mark.asyncio
async def test_runs_ensure_then_renew():
    reconciler = MagicMock()
    reconciler.ensure = AsyncMock(return_value=ReconcileReport(created=2))
    reconciler.renew = AsyncMock(return_value=ReconcileReport(renewed=1))

    await run_scheduled_maintenance(reconciler)

    reconciler.ensure.assert_awaited_once()
    reconciler.renew.assert_awaited_once()


@pytest.mark.asyncio
async def test_failures_are_swallowed(store, sync_config):
    reconciler = MagicMock()
    reconciler.ensure = AsyncMock(side_effect=RuntimeError("oura down"))
    reconciler.renew = AsyncMock()
    store.runs = {"old": _run("old", datetime(2020, 1, 1, tzinfo=timezone.utc))}

    await run_scheduled_maintenance(reconciler, store, sync_config)

    reconciler.renew.assert_not_awaited()
    # the sweep still runs after a reconciler failure
    assert store.runs["old"].status == SyncStatus.FAILED


@pytest.mark.asyncio
async def test_sweep_failure_is_swallowed(sync_config):
    reconciler = MagicMock()
    reconciler.ensure = AsyncMock(return_value=ReconcileReport())
    reconciler.renew = AsyncMock(return_value=ReconcileReport())
    store = MagicMock()
    store.reclaim_abandoned_runs = AsyncMock(side_effect=RuntimeError("db down"))

    await run_scheduled_maintenance(reconciler, store, sync_config)

    store.reclaim_abandoned_runs.assert_awaited_once()
