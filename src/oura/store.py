"""Storage contracts the sync engine relies on.

``EngineStore`` is the relational side (installations, connections, daily
scores, sync runs, webhook subscription mirrors); ``SnapshotStore`` is the
blob side holding immutable raw provider documents.

Every write is a single-row statement, keyed upserts wherever a row has a
natural key, so concurrent or redelivered work is safe without multi-row
transactions.  The Postgres implementation lives in
``src.services.postgres``; the R2 implementation in ``src.services.r2``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any

from src.oura.base import (
    ConnectionRecord,
    DailyScore,
    Installation,
    SyncRun,
    SyncStatus,
    WebhookSubscription,
)
from src.oura.config_loader import MetricFamily


def snapshot_key(install_id: str, day: date, data_type: str) -> str:
    """Blob key for a raw document: ``{install_id}/{day}/{data_type}.json``."""
    return f"{install_id}/{day.isoformat()}/{data_type}.json"


def snapshot_prefix(install_id: str) -> str:
    return f"{install_id}/"


class EngineStore(ABC):
    """Relational read/write contract of the sync engine."""

    async def ping(self) -> bool:
        """Cheap liveness probe for the health endpoint."""
        return True

    # ── Installations ──

    @abstractmethod
    async def create_installation(self, installation: Installation) -> None: ...

    @abstractmethod
    async def get_installation(self, install_id: str) -> Installation | None: ...

    @abstractmethod
    async def get_installation_by_token_hash(self, token_hash: str) -> Installation | None: ...

    @abstractmethod
    async def get_installation_by_oauth_state(self, state: str) -> Installation | None: ...

    @abstractmethod
    async def update_installation(self, install_id: str, changes: dict[str, Any]) -> None:
        """Set the given columns; keys must be in ``INSTALLATION_MUTABLE_FIELDS``."""

    # ── Connections ──

    @abstractmethod
    async def get_connection(self, install_id: str) -> ConnectionRecord | None: ...

    @abstractmethod
    async def get_connection_by_oura_user(self, oura_user_id: str) -> ConnectionRecord | None: ...

    @abstractmethod
    async def upsert_connection(self, record: ConnectionRecord) -> None:
        """Insert or replace the single connection row for ``record.install_id``."""

    @abstractmethod
    async def update_connection_tokens(
        self,
        install_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str,
        token_expires_at: datetime | None,
        scopes: str | None,
    ) -> None:
        """Replace the token pair and clear ``stale``; ``scopes=None`` keeps the old value."""

    @abstractmethod
    async def set_connection_stale(self, install_id: str) -> None: ...

    @abstractmethod
    async def delete_connection(self, install_id: str) -> None: ...

    @abstractmethod
    async def count_connections(self) -> int: ...

    # ── Daily scores ──

    @abstractmethod
    async def upsert_daily_family(
        self,
        install_id: str,
        day: date,
        family: MetricFamily,
        score: float | None,
        contributors_json: str | None,
        timestamp: str | None,
        updated_at: datetime,
    ) -> None:
        """Upsert one family's columns for (install, day), leaving sibling families untouched."""

    @abstractmethod
    async def list_daily_scores(self, install_id: str, start: date, end: date) -> list[DailyScore]:
        """Rows with ``start <= day <= end``, ascending by day."""

    @abstractmethod
    async def delete_daily_scores(self, install_id: str) -> None: ...

    # ── Sync runs ──

    @abstractmethod
    async def start_sync_run(self, run: SyncRun) -> None:
        """Insert or replace the run row in ``running`` state."""

    @abstractmethod
    async def finish_sync_run(
        self,
        run_id: str,
        status: SyncStatus,
        finished_at: datetime,
        records_written: int,
        error_summary: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def get_sync_run(self, run_id: str) -> SyncRun | None: ...

    @abstractmethod
    async def delete_sync_runs(self, install_id: str) -> None: ...

    @abstractmethod
    async def reclaim_abandoned_runs(
        self, started_before: datetime, finished_at: datetime, error_summary: str
    ) -> int:
        """Fail every ``running`` run started before the cutoff; return how many."""

    # ── Webhook subscription mirror ──

    @abstractmethod
    async def upsert_subscription(self, subscription: WebhookSubscription) -> None: ...

    @abstractmethod
    async def list_active_subscriptions(self) -> list[WebhookSubscription]: ...

    @abstractmethod
    async def delete_all_subscriptions(self) -> None: ...


class SnapshotStore(ABC):
    """Blob contract for raw provider documents."""

    @abstractmethod
    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> None: ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under ``prefix``; return the number removed."""
