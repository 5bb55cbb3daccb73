"""Wiring of the sync engine's collaborators for the API process."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from src.config import Settings
from src.oura.auth import InstallationAuthenticator
from src.oura.client import OuraAppClient
from src.oura.config_loader import SyncConfig
from src.oura.crypto import load_key
from src.oura.store import EngineStore, SnapshotStore
from src.oura.subscriptions import SubscriptionReconciler
from src.oura.sync.orchestrator import SyncOrchestrator
from src.oura.sync.queue import InMemorySyncQueue, SyncQueue
from src.oura.tokens import ConnectionStore
from src.oura.webhooks import WebhookIngestor

logger = logging.getLogger("ringlink.engine")


@dataclass
class EngineServices:
    """Everything a route handler may need, built once per process."""

    settings: Settings
    config: SyncConfig
    store: EngineStore
    snapshots: SnapshotStore
    connections: ConnectionStore
    app_client: OuraAppClient
    authenticator: InstallationAuthenticator
    reconciler: SubscriptionReconciler
    orchestrator: SyncOrchestrator
    queue: SyncQueue
    ingestor: WebhookIngestor


def build_services(
    settings: Settings,
    config: SyncConfig,
    store: EngineStore,
    snapshots: SnapshotStore,
    http_client: httpx.AsyncClient | None = None,
    queue: SyncQueue | None = None,
) -> EngineServices:
    """Assemble the engine.

    ``queue`` defaults to an ``InMemorySyncQueue`` draining into the
    orchestrator; the caller starts its consumer.

    Raises:
        InvalidKeyLength: If TOKEN_ENCRYPTION_KEY is not a 32-byte key.
    """
    key = load_key(settings.token_encryption_key)
    connections = ConnectionStore(store, key)
    app_client = OuraAppClient(
        settings.oura_client_id, settings.oura_client_secret, http_client=http_client
    )
    orchestrator = SyncOrchestrator(
        store, snapshots, connections, app_client, config, http_client=http_client
    )
    if queue is None:
        queue = InMemorySyncQueue(orchestrator, max_attempts=settings.queue_max_attempts)

    services = EngineServices(
        settings=settings,
        config=config,
        store=store,
        snapshots=snapshots,
        connections=connections,
        app_client=app_client,
        authenticator=InstallationAuthenticator(store),
        reconciler=SubscriptionReconciler(
            app_client,
            store,
            settings.webhook_callback_url,
            settings.oura_verification_token,
            config,
        ),
        orchestrator=orchestrator,
        queue=queue,
        ingestor=WebhookIngestor(
            store, queue, settings.oura_client_secret, settings.oura_verification_token
        ),
    )
    logger.info(
        "Sync engine ready: %d metric families, webhook callback %s",
        len(config.metric_families),
        settings.webhook_callback_url,
    )
    return services
