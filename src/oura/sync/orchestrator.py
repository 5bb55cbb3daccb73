"""Sync orchestrator: range syncs and webhook-triggered fetches.

Each ``sync_range`` call is audited by exactly one ``sync_runs`` row that
moves ``running -> completed`` or ``running -> failed`` once.  Errors are
re-raised after the run is finalized so an at-least-once queue can redeliver
the message; redelivery is safe because every write is a keyed upsert.

Runs for the same installation are not serialized here.  Concurrent runs
only cost duplicate provider calls.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta

import httpx

from src.oura.base import DecryptedConnection, SyncMode, SyncRun, SyncStatus, new_id, utc_now
from src.oura.client import OuraAppClient, OuraClient, Sleep
from src.oura.config_loader import SyncConfig
from src.oura.errors import OuraHttpError, describe_error
from src.oura.normalize import upsert_daily_document
from src.oura.store import EngineStore, SnapshotStore
from src.oura.tokens import ConnectionStore

logger = logging.getLogger("ringlink.oura.sync")

NO_CONNECTION_MESSAGE = "No Oura connection found for install"
STALE_CONNECTION_MESSAGE = "Connection is stale; re-authentication required"


def _is_auth_failure(exc: BaseException) -> bool:
    return isinstance(exc, OuraHttpError) and exc.is_auth_failure


class SyncOrchestrator:
    """Run syncs for one installation at a time.

    Args:
        store:       Relational store.
        snapshots:   Blob store for raw documents.
        connections: Decrypting connection store.
        app_client:  Application Oura client (used for token refresh).
        config:      Engine configuration (metric families, retry, windows).
        http_client: Optional shared httpx client for provider calls.
        sleep:       Backoff delay; tests inject a no-op.
    """

    def __init__(
        self,
        store: EngineStore,
        snapshots: SnapshotStore,
        connections: ConnectionStore,
        app_client: OuraAppClient,
        config: SyncConfig,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._snapshots = snapshots
        self._connections = connections
        self._app_client = app_client
        self._config = config
        self._http_client = http_client
        self._sleep = sleep

    def _client_for(self, connection: DecryptedConnection) -> OuraClient:
        return OuraClient(
            connection.install_id,
            connection.access_token,
            connection.refresh_token,
            app_client=self._app_client,
            connections=self._connections,
            retry=self._config.retry,
            http_client=self._http_client,
            sleep=self._sleep,
        )

    def _truncate(self, message: str) -> str:
        return message[: self._config.error_summary_max_chars]

    async def _finish(self, run: SyncRun, status: SyncStatus, error: str | None = None) -> None:
        run.status = status
        run.finished_at = utc_now()
        run.error_summary = self._truncate(error) if error else None
        await self._store.finish_sync_run(
            run.id,
            status,
            finished_at=run.finished_at,
            records_written=run.records_written,
            error_summary=run.error_summary,
        )

    async def sync_range(
        self,
        install_id: str,
        start: date,
        end: date,
        mode: SyncMode,
        run_id: str | None = None,
    ) -> SyncRun:
        """Sync every metric family for ``start..end`` (inclusive).

        A missing or stale connection fails the run without raising.

        Returns:
            The finalized run.

        Raises:
            Exception: Whatever aborted the run, after it has been recorded.
        """
        run = SyncRun(
            id=run_id or new_id("sync"),
            install_id=install_id,
            mode=SyncMode(mode),
            status=SyncStatus.RUNNING,
            started_at=utc_now(),
        )
        await self._store.start_sync_run(run)
        logger.info(
            "Sync run %s started for install %s (%s, %s..%s)",
            run.id,
            install_id,
            run.mode.value,
            start,
            end,
        )

        try:
            connection = await self._connections.get(install_id)
            if connection is None or connection.stale:
                message = NO_CONNECTION_MESSAGE if connection is None else STALE_CONNECTION_MESSAGE
                logger.warning("Sync run %s skipped: %s", run.id, message)
                await self._finish(run, SyncStatus.FAILED, message)
                return run

            client = self._client_for(connection)
            for family in self._config.metric_families:
                docs = await client.list_daily_collection(family.data_type, start, end)
                for doc in docs:
                    if await upsert_daily_document(
                        self._store, self._snapshots, install_id, family, doc
                    ):
                        run.records_written += 1

            await self._connections.touch_sync_success(install_id)
            await self._finish(run, SyncStatus.COMPLETED)
        except Exception as exc:
            message = describe_error(exc)
            try:
                if _is_auth_failure(exc):
                    await self._connections.mark_stale(install_id, self._truncate(message))
                else:
                    await self._store.update_installation(
                        install_id, {"last_error": self._truncate(message)}
                    )
            except Exception:
                logger.exception("Could not record failure of sync run %s for install %s", run.id, install_id)
            finally:
                await self._finish(run, SyncStatus.FAILED, message)
            logger.error(
                "Sync run %s failed for install %s after %d records: %s",
                run.id,
                install_id,
                run.records_written,
                exc,
            )
            raise

        logger.info(
            "Sync run %s completed for install %s: %d records", run.id, install_id, run.records_written
        )
        return run

    async def process_webhook_event(
        self,
        install_id: str,
        event_type: str,
        data_type: str,
        object_id: str,
        today: date | None = None,
    ) -> int:
        """Apply one webhook notification; returns records written.

        Unsupported data types are ignored.  ``delete`` resyncs the trailing
        window ending today; ``create``/``update`` fetch the one object.
        """
        family = self._config.family_for(data_type)
        if family is None:
            logger.debug("Ignoring webhook for unsupported data type %s", data_type)
            return 0

        if event_type == "delete":
            end = today or utc_now().date()
            start = end - timedelta(days=self._config.webhooks.delete_resync_days)
            run = await self.sync_range(install_id, start, end, SyncMode.WEBHOOK)
            return run.records_written

        connection = await self._connections.get(install_id)
        if connection is None:
            logger.info("Dropping %s/%s webhook: install %s has no connection", event_type, data_type, install_id)
            return 0
        if connection.stale:
            logger.info("Dropping %s/%s webhook: install %s is stale", event_type, data_type, install_id)
            return 0

        client = self._client_for(connection)
        try:
            doc = await client.fetch_one(data_type, object_id)
        except OuraHttpError as exc:
            if exc.is_auth_failure:
                await self._connections.mark_stale(install_id, self._truncate(describe_error(exc)))
            raise

        written = await upsert_daily_document(self._store, self._snapshots, install_id, family, doc)
        await self._connections.touch_sync_success(install_id)
        return 1 if written else 0
