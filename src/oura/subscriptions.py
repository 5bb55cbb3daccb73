"""Webhook subscription reconciler.

Keeps the app-wide set of Oura webhook subscriptions equal to the
(event_type, data_type) matrix in ``sync_config.yaml`` and mirrors every
remote subscription into ``oura_webhook_subscriptions``.  All entry points are
idempotent and are run by the periodic maintenance job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.oura.base import WebhookSubscription, utc_now
from src.oura.client import OuraAppClient
from src.oura.config_loader import SyncConfig
from src.oura.errors import describe_error
from src.oura.store import EngineStore

logger = logging.getLogger("ringlink.oura.subscriptions")


@dataclass
class ReconcileReport:
    """Outcome counts of one ``ensure`` or ``renew`` pass."""

    created: int = 0
    mirrored: int = 0
    renewed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class SubscriptionReconciler:
    def __init__(
        self,
        app_client: OuraAppClient,
        store: EngineStore,
        callback_url: str,
        verification_token: str,
        config: SyncConfig,
    ) -> None:
        self._app_client = app_client
        self._store = store
        self._callback_url = callback_url
        self._verification_token = verification_token
        self._config = config

    async def ensure(self) -> ReconcileReport:
        """Create any missing (event_type, data_type) subscription.

        Existing matches are mirrored as found.  A failure on one pair is
        recorded and the remaining pairs are still attempted.
        """
        report = ReconcileReport()
        existing = await self._app_client.list_subscriptions()

        for event_type, data_type in self._config.subscription_matrix():
            try:
                match = next(
                    (
                        s
                        for s in existing
                        if s.event_type == event_type and s.data_type == data_type
                    ),
                    None,
                )
                if match is None:
                    match = await self._app_client.create_subscription(
                        event_type, data_type, self._callback_url, self._verification_token
                    )
                    report.created += 1
                    logger.info("Created Oura webhook subscription %s/%s", event_type, data_type)
                await self._store.upsert_subscription(match)
                report.mirrored += 1
            except Exception as exc:
                message = f"{event_type}/{data_type}: {describe_error(exc)}"
                logger.error("Failed to ensure webhook subscription %s", message)
                report.errors.append(message)

        return report

    async def renew(self, now: datetime | None = None) -> ReconcileReport:
        """Renew subscriptions expiring within the renewal threshold."""
        report = ReconcileReport()
        existing = await self._app_client.list_subscriptions()
        threshold = (now or utc_now()) + timedelta(days=self._config.webhooks.renewal_threshold_days)

        for subscription in existing:
            try:
                if subscription.expiration_time is None or subscription.expiration_time > threshold:
                    await self._store.upsert_subscription(subscription)
                    report.mirrored += 1
                    continue

                renewed = await self._app_client.update_subscription(
                    subscription.id,
                    subscription.event_type,
                    subscription.data_type,
                    self._callback_url,
                    self._verification_token,
                )
                await self._store.upsert_subscription(renewed)
                report.renewed += 1
                logger.info(
                    "Renewed Oura webhook subscription %s (%s/%s)",
                    subscription.id,
                    subscription.event_type,
                    subscription.data_type,
                )
            except Exception as exc:
                message = f"{subscription.id}: {describe_error(exc)}"
                logger.error("Failed to renew webhook subscription %s", message)
                report.errors.append(message)

        return report

    async def delete_all(self) -> int:
        """Delete every mirrored subscription remotely, then clear the mirror.

        Unlike ``ensure``/``renew`` this propagates the first remote failure,
        leaving the mirror intact so a later teardown can retry.
        """
        active: list[WebhookSubscription] = await self._store.list_active_subscriptions()
        for subscription in active:
            await self._app_client.delete_subscription(subscription.id)
        await self._store.delete_all_subscriptions()
        logger.info("Deleted %d Oura webhook subscriptions", len(active))
        return len(active)
