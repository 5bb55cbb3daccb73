"""Sync execution for Ringlink.

Modules:
    orchestrator - Range syncs and webhook-triggered fetches
    queue        - Queue message shapes, dispatch, in-process channel
    maintenance  - Subscription upkeep and abandoned-run sweep
"""

from src.oura.sync.orchestrator import SyncOrchestrator
from src.oura.sync.queue import (
    InMemorySyncQueue,
    SyncQueue,
    SyncRangeMessage,
    WebhookEventMessage,
)

__all__ = [
    "SyncOrchestrator",
    "SyncQueue",
    "InMemorySyncQueue",
    "SyncRangeMessage",
    "WebhookEventMessage",
]
