"""Postgres implementation of the engine store.

Uses ``asyncpg`` directly.  Every method is one statement on a pooled
connection; upserts are ``INSERT ... ON CONFLICT DO UPDATE`` keyed by the
table's natural key, so replays and concurrent writers converge.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings
from src.oura.base import (
    INSTALLATION_MUTABLE_FIELDS,
    ConnectionRecord,
    DailyScore,
    Installation,
    InstallStatus,
    SyncMode,
    SyncRun,
    SyncStatus,
    WebhookSubscription,
)
from src.oura.config_loader import MetricFamily
from src.oura.errors import StorageError
from src.oura.store import EngineStore

logger = logging.getLogger("ringlink.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Only ``update_columns`` are overwritten on conflict, which is what keeps
    one metric family's write from touching another family's columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _installation(row: asyncpg.Record) -> Installation:
    return Installation(
        id=row["id"],
        token_hash=row["token_hash"],
        status=InstallStatus(row["status"]),
        created_at=row["created_at"],
        last_seen_at=row["last_seen_at"],
        oauth_state=row["oauth_state"],
        oauth_state_expires_at=row["oauth_state_expires_at"],
        last_error=row["last_error"],
        last_sync_at=row["last_sync_at"],
    )


def _connection(row: asyncpg.Record) -> ConnectionRecord:
    return ConnectionRecord(
        install_id=row["install_id"],
        oura_user_id=row["oura_user_id"],
        access_token_encrypted=row["access_token_encrypted"],
        refresh_token_encrypted=row["refresh_token_encrypted"],
        connected_at=row["connected_at"],
        scopes=row["scopes"],
        token_expires_at=row["token_expires_at"],
        stale=bool(row["stale"]),
    )


def _sync_run(row: asyncpg.Record) -> SyncRun:
    return SyncRun(
        id=row["id"],
        install_id=row["install_id"],
        mode=SyncMode(row["mode"]),
        status=SyncStatus(row["status"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        records_written=row["records_written"],
        error_summary=row["error_summary"],
    )


def _subscription(row: asyncpg.Record) -> WebhookSubscription:
    return WebhookSubscription(
        id=row["id"],
        event_type=row["event_type"],
        data_type=row["data_type"],
        callback_url=row["callback_url"],
        expiration_time=row["expiration_time"],
        active=bool(row["active"]),
    )


_DAILY_SCORE_COLUMNS = (
    "install_id, day, updated_at, "
    "sleep_score, sleep_contributors_json, sleep_timestamp, "
    "readiness_score, readiness_contributors_json, readiness_timestamp, "
    "activity_score, activity_contributors_json, activity_timestamp"
)

_CONNECTION_UPSERT = build_upsert_query(
    "oura_connections",
    [
        "install_id",
        "oura_user_id",
        "access_token_encrypted",
        "refresh_token_encrypted",
        "scopes",
        "token_expires_at",
        "connected_at",
        "stale",
    ],
    ["install_id"],
)

_SUBSCRIPTION_UPSERT = build_upsert_query(
    "oura_webhook_subscriptions",
    ["id", "event_type", "data_type", "callback_url", "expiration_time", "active"],
    ["id"],
)

_SYNC_RUN_UPSERT = build_upsert_query(
    "sync_runs",
    [
        "id",
        "install_id",
        "mode",
        "status",
        "started_at",
        "finished_at",
        "records_written",
        "error_summary",
    ],
    ["id"],
)


class PostgresEngineStore(EngineStore):
    """``EngineStore`` over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _acquire(self) -> AsyncGenerator[asyncpg.Connection, None]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error("Database error: %s", exc)
            raise StorageError(f"Database error: {exc.__class__.__name__}") from exc

    async def ping(self) -> bool:
        try:
            async with self._acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except StorageError:
            return False

    # ── Installations ──

    async def create_installation(self, installation: Installation) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO installations (id, token_hash, status, created_at, last_seen_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                installation.id,
                installation.token_hash,
                installation.status.value,
                installation.created_at,
                installation.last_seen_at,
            )

    async def get_installation(self, install_id: str) -> Installation | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM installations WHERE id = $1", install_id)
        return _installation(row) if row else None

    async def get_installation_by_token_hash(self, token_hash: str) -> Installation | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM installations WHERE token_hash = $1", token_hash
            )
        return _installation(row) if row else None

    async def get_installation_by_oauth_state(self, state: str) -> Installation | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM installations WHERE oauth_state = $1", state
            )
        return _installation(row) if row else None

    async def update_installation(self, install_id: str, changes: dict[str, Any]) -> None:
        unknown = set(changes) - INSTALLATION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update installation columns: {sorted(unknown)}")
        if not changes:
            return
        columns = list(changes)
        assignments = ", ".join(f"{col} = ${i + 2}" for i, col in enumerate(columns))
        async with self._acquire() as conn:
            await conn.execute(
                f"UPDATE installations SET {assignments} WHERE id = $1",
                install_id,
                *(_db_value(changes[col]) for col in columns),
            )

    # ── Connections ──

    async def get_connection(self, install_id: str) -> ConnectionRecord | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM oura_connections WHERE install_id = $1", install_id
            )
        return _connection(row) if row else None

    async def get_connection_by_oura_user(self, oura_user_id: str) -> ConnectionRecord | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM oura_connections WHERE oura_user_id = $1", oura_user_id
            )
        return _connection(row) if row else None

    async def upsert_connection(self, record: ConnectionRecord) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                _CONNECTION_UPSERT,
                record.install_id,
                record.oura_user_id,
                record.access_token_encrypted,
                record.refresh_token_encrypted,
                record.scopes,
                record.token_expires_at,
                record.connected_at,
                record.stale,
            )

    async def update_connection_tokens(
        self,
        install_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str,
        token_expires_at: datetime | None,
        scopes: str | None,
    ) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE oura_connections
                SET access_token_encrypted = $2,
                    refresh_token_encrypted = $3,
                    token_expires_at = $4,
                    scopes = COALESCE($5, scopes),
                    stale = FALSE
                WHERE install_id = $1
                """,
                install_id,
                access_token_encrypted,
                refresh_token_encrypted,
                token_expires_at,
                scopes,
            )

    async def set_connection_stale(self, install_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                "UPDATE oura_connections SET stale = TRUE WHERE install_id = $1", install_id
            )

    async def delete_connection(self, install_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute("DELETE FROM oura_connections WHERE install_id = $1", install_id)

    async def count_connections(self) -> int:
        async with self._acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM oura_connections")

    # ── Daily scores ──

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
        owned = [*family.columns, "updated_at"]
        query = build_upsert_query(
            "oura_daily_scores",
            ["install_id", "day", *owned],
            ["install_id", "day"],
            update_columns=owned,
        )
        async with self._acquire() as conn:
            await conn.execute(
                query, install_id, day, score, contributors_json, timestamp, updated_at
            )

    async def list_daily_scores(self, install_id: str, start: date, end: date) -> list[DailyScore]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_DAILY_SCORE_COLUMNS}
                FROM oura_daily_scores
                WHERE install_id = $1 AND day >= $2 AND day <= $3
                ORDER BY day ASC
                """,
                install_id,
                start,
                end,
            )
        return [DailyScore(**dict(row)) for row in rows]

    async def delete_daily_scores(self, install_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute("DELETE FROM oura_daily_scores WHERE install_id = $1", install_id)

    # ── Sync runs ──

    async def start_sync_run(self, run: SyncRun) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                _SYNC_RUN_UPSERT,
                run.id,
                run.install_id,
                run.mode.value,
                SyncStatus.RUNNING.value,
                run.started_at,
                None,
                0,
                None,
            )

    async def finish_sync_run(
        self,
        run_id: str,
        status: SyncStatus,
        finished_at: datetime,
        records_written: int,
        error_summary: str | None = None,
    ) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE sync_runs
                SET status = $2, finished_at = $3, records_written = $4, error_summary = $5
                WHERE id = $1
                """,
                run_id,
                SyncStatus(status).value,
                finished_at,
                records_written,
                error_summary,
            )

    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM sync_runs WHERE id = $1", run_id)
        return _sync_run(row) if row else None

    async def delete_sync_runs(self, install_id: str) -> None:
        async with self._acquire() as conn:
            await conn.execute("DELETE FROM sync_runs WHERE install_id = $1", install_id)

    async def reclaim_abandoned_runs(
        self, started_before: datetime, finished_at: datetime, error_summary: str
    ) -> int:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                UPDATE sync_runs
                SET status = 'failed', finished_at = $2, error_summary = $3
                WHERE status = 'running' AND started_at < $1
                """,
                started_before,
                finished_at,
                error_summary,
            )
        return _affected(status)

    # ── Webhook subscription mirror ──

    async def upsert_subscription(self, subscription: WebhookSubscription) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                _SUBSCRIPTION_UPSERT,
                subscription.id,
                subscription.event_type,
                subscription.data_type,
                subscription.callback_url,
                subscription.expiration_time,
                True,
            )

    async def list_active_subscriptions(self) -> list[WebhookSubscription]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM oura_webhook_subscriptions WHERE active ORDER BY event_type, data_type"
            )
        return [_subscription(row) for row in rows]

    async def delete_all_subscriptions(self) -> None:
        async with self._acquire() as conn:
            await conn.execute("DELETE FROM oura_webhook_subscriptions")
