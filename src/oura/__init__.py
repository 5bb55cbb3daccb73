"""Ringlink Oura sync engine.

Keeps each installation's Oura daily scores mirrored into Postgres, with raw
documents archived to R2.

Subpackages:
    sync/  - Range-sync orchestrator, work queue, periodic maintenance

Core modules:
    config_loader  - Load/validate sync_config.yaml
    crypto         - Token encryption at rest and webhook signatures
    client         - Oura API client with refresh-on-401 and backoff
    tokens         - Per-installation connection store
    auth           - Install token authentication and registration
    subscriptions  - Webhook subscription reconciler
    normalize      - Daily document decoding and per-family upserts
    webhooks       - Webhook verification and ingestion
"""

from src.oura.base import InstallStatus, SyncMode, SyncStatus
from src.oura.config_loader import SyncConfig, get_sync_config

__all__ = [
    "InstallStatus",
    "SyncMode",
    "SyncStatus",
    "SyncConfig",
    "get_sync_config",
]
