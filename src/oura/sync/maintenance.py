"""Periodic maintenance: webhook subscription upkeep and abandoned-run sweep.

Nothing waits on this job.  Every failure is logged and swallowed so the next
tick simply tries again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from src.oura.base import utc_now
from src.oura.config_loader import SyncConfig
from src.oura.store import EngineStore
from src.oura.subscriptions import SubscriptionReconciler

logger = logging.getLogger("ringlink.oura.maintenance")

ABANDONED_RUN_MESSAGE = "Run abandoned"


async def reclaim_abandoned_runs(
    store: EngineStore, config: SyncConfig, now: datetime | None = None
) -> int:
    """Fail ``running`` runs older than ``abandoned_after_minutes``."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=config.abandoned_after_minutes)
    reclaimed = await store.reclaim_abandoned_runs(
        started_before=cutoff, finished_at=now, error_summary=ABANDONED_RUN_MESSAGE
    )
    if reclaimed:
        logger.warning("Marked %d abandoned sync runs as failed", reclaimed)
    return reclaimed


async def run_scheduled_maintenance(
    reconciler: SubscriptionReconciler,
    store: EngineStore | None = None,
    config: SyncConfig | None = None,
) -> None:
    """ensure() then renew() subscriptions, then sweep abandoned runs."""
    try:
        ensured = await reconciler.ensure()
        renewed = await reconciler.renew()
        logger.info(
            "Webhook maintenance: %d created, %d renewed, %d errors",
            ensured.created,
            renewed.renewed,
            len(ensured.errors) + len(renewed.errors),
        )
    except Exception:
        logger.exception("Webhook subscription maintenance failed")

    if store is not None and config is not None:
        try:
            await reclaim_abandoned_runs(store, config)
        except Exception:
            logger.exception("Abandoned sync run sweep failed")


async def maintenance_loop(
    reconciler: SubscriptionReconciler,
    store: EngineStore,
    config: SyncConfig,
) -> None:
    """Run maintenance every ``maintenance_interval_minutes`` until cancelled."""
    interval = config.maintenance_interval_minutes * 60
    while True:
        await run_scheduled_maintenance(reconciler, store, config)
        await asyncio.sleep(interval)
