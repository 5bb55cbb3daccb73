"""In-memory collaborators for engine tests.

``InMemoryEngineStore`` and ``InMemorySnapshotStore`` implement the storage
contracts over dicts; ``RecordingQueue`` captures sent messages;
``FakeOuraApi`` is an ``httpx.MockTransport`` handler that behaves like the
parts of the Oura API the engine calls, with per-route scripted overrides.
"""

from __future__ import annotations

import copy
import json
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import parse_qs

import httpx

from src.oura.base import (
    INSTALLATION_MUTABLE_FIELDS,
    ConnectionRecord,
    DailyScore,
    Installation,
    SyncRun,
    SyncStatus,
    WebhookSubscription,
)
from src.oura.config_loader import MetricFamily
from src.oura.store import EngineStore, SnapshotStore
from src.oura.sync.queue import SyncQueue, SyncRangeMessage, WebhookEventMessage

TEST_KEY = bytes([1]) * 32
INSTALL_ID = "install_test"
INSTALL_TOKEN = "install-token-abc"
OURA_USER_ID = "oura-user-1"
CLIENT_SECRET = "test-client-secret"


async def no_sleep(seconds: float) -> None:
    return None


class InMemoryEngineStore(EngineStore):
    def __init__(self) -> None:
        self.installations: dict[str, Installation] = {}
        self.connections: dict[str, ConnectionRecord] = {}
        self.scores: dict[tuple[str, date], DailyScore] = {}
        self.runs: dict[str, SyncRun] = {}
        self.subscriptions: dict[str, WebhookSubscription] = {}

    # ── Installations ──

    async def create_installation(self, installation: Installation) -> None:
        self.installations[installation.id] = copy.deepcopy(installation)

    async def get_installation(self, install_id: str) -> Installation | None:
        return copy.deepcopy(self.installations.get(install_id))

    async def get_installation_by_token_hash(self, token_hash: str) -> Installation | None:
        for inst in self.installations.values():
            if inst.token_hash == token_hash:
                return copy.deepcopy(inst)
        return None

    async def get_installation_by_oauth_state(self, state: str) -> Installation | None:
        for inst in self.installations.values():
            if inst.oauth_state == state:
                return copy.deepcopy(inst)
        return None

    async def update_installation(self, install_id: str, changes: dict[str, Any]) -> None:
        unknown = set(changes) - INSTALLATION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update installation columns: {sorted(unknown)}")
        inst = self.installations.get(install_id)
        if inst is None:
            return
        for key, value in changes.items():
            setattr(inst, key, value)

    # ── Connections ──

    async def get_connection(self, install_id: str) -> ConnectionRecord | None:
        return copy.deepcopy(self.connections.get(install_id))

    async def get_connection_by_oura_user(self, oura_user_id: str) -> ConnectionRecord | None:
        for record in self.connections.values():
            if record.oura_user_id == oura_user_id:
                return copy.deepcopy(record)
        return None

    async def upsert_connection(self, record: ConnectionRecord) -> None:
        self.connections[record.install_id] = copy.deepcopy(record)

    async def update_connection_tokens(
        self,
        install_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str,
        token_expires_at: datetime | None,
        scopes: str | None,
    ) -> None:
        record = self.connections.get(install_id)
        if record is None:
            return
        record.access_token_encrypted = access_token_encrypted
        record.refresh_token_encrypted = refresh_token_encrypted
        record.token_expires_at = token_expires_at
        if scopes is not None:
            record.scopes = scopes
        record.stale = False

    async def set_connection_stale(self, install_id: str) -> None:
        if install_id in self.connections:
            self.connections[install_id].stale = True

    async def delete_connection(self, install_id: str) -> None:
        self.connections.pop(install_id, None)

    async def count_connections(self) -> int:
        return len(self.connections)

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
        row = self.scores.get((install_id, day))
        if row is None:
            row = DailyScore(install_id=install_id, day=day, updated_at=updated_at)
            self.scores[(install_id, day)] = row
        setattr(row, family.score_column, score)
        setattr(row, family.contributors_column, contributors_json)
        setattr(row, family.timestamp_column, timestamp)
        row.updated_at = updated_at

    async def list_daily_scores(self, install_id: str, start: date, end: date) -> list[DailyScore]:
        rows = [
            copy.deepcopy(row)
            for (iid, day), row in self.scores.items()
            if iid == install_id and start <= day <= end
        ]
        return sorted(rows, key=lambda r: r.day)

    async def delete_daily_scores(self, install_id: str) -> None:
        for key in [k for k in self.scores if k[0] == install_id]:
            del self.scores[key]

    # ── Sync runs ──

    async def start_sync_run(self, run: SyncRun) -> None:
        stored = copy.deepcopy(run)
        stored.status = SyncStatus.RUNNING
        stored.finished_at = None
        stored.records_written = 0
        stored.error_summary = None
        self.runs[run.id] = stored

    async def finish_sync_run(
        self,
        run_id: str,
        status: SyncStatus,
        finished_at: datetime,
        records_written: int,
        error_summary: str | None = None,
    ) -> None:
        run = self.runs[run_id]
        run.status = SyncStatus(status)
        run.finished_at = finished_at
        run.records_written = records_written
        run.error_summary = error_summary

    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        return copy.deepcopy(self.runs.get(run_id))

    async def delete_sync_runs(self, install_id: str) -> None:
        for run_id in [r.id for r in self.runs.values() if r.install_id == install_id]:
            del self.runs[run_id]

    async def reclaim_abandoned_runs(
        self, started_before: datetime, finished_at: datetime, error_summary: str
    ) -> int:
        reclaimed = 0
        for run in self.runs.values():
            if run.status == SyncStatus.RUNNING and run.started_at < started_before:
                run.status = SyncStatus.FAILED
                run.finished_at = finished_at
                run.error_summary = error_summary
                reclaimed += 1
        return reclaimed

    # ── Webhook subscription mirror ──

    async def upsert_subscription(self, subscription: WebhookSubscription) -> None:
        stored = copy.deepcopy(subscription)
        stored.active = True
        self.subscriptions[subscription.id] = stored

    async def list_active_subscriptions(self) -> list[WebhookSubscription]:
        return [copy.deepcopy(s) for s in self.subscriptions.values() if s.active]

    async def delete_all_subscriptions(self) -> None:
        self.subscriptions.clear()


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> None:
        self.objects[key] = body

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self.objects if k.startswith(prefix)]
        for key in keys:
            del self.objects[key]
        return len(keys)


class RecordingQueue(SyncQueue):
    def __init__(self) -> None:
        self.messages: list[SyncRangeMessage | WebhookEventMessage] = []

    async def send(self, message: SyncRangeMessage | WebhookEventMessage) -> None:
        self.messages.append(message)


# ---------------------------------------------------------------------------
# Fake Oura API
# ---------------------------------------------------------------------------

Responder = Callable[[httpx.Request], httpx.Response]


class FakeOuraApi:
    """Mock Oura v2 API.

    ``documents`` maps a data type to its daily documents.  ``script`` queues
    one-shot responses for a (method, path); ``always`` pins a response.
    ``page_size`` splits collection listings into ``next_token`` pages.
    """

    def __init__(self, oura_user_id: str = "oura-user-1") -> None:
        self.oura_user_id = oura_user_id
        self.documents: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.remote_subscriptions: dict[str, dict[str, Any]] = {}
        self.page_size: int | None = None
        self.requests: list[httpx.Request] = []
        self.refresh_count = 0
        self._scripted: dict[tuple[str, str], list[httpx.Response]] = defaultdict(list)
        self._pinned: dict[tuple[str, str], Responder] = {}
        self._subscription_seq = 0

    # ── Test controls ──

    def script(self, method: str, path: str, *responses: httpx.Response) -> None:
        self._scripted[(method, path)].extend(responses)

    def always(self, method: str, path: str, status: int, json: Any = None) -> None:
        self._pinned[(method, path)] = lambda request: httpx.Response(
            status, json=json if json is not None else {"detail": "scripted"}
        )

    def fail_everything(self, status: int) -> None:
        """Every user-data and token call answers ``status``."""
        self._pinned[("*", "*")] = lambda request: httpx.Response(status, json={"detail": "nope"})

    def add_subscription(
        self, event_type: str, data_type: str, expiration_time: datetime | None = None
    ) -> str:
        self._subscription_seq += 1
        sub_id = f"sub-{self._subscription_seq}"
        self.remote_subscriptions[sub_id] = {
            "id": sub_id,
            "event_type": event_type,
            "data_type": data_type,
            "callback_url": "https://ringlink.test/v1/webhooks/oura",
            "expiration_time": expiration_time.isoformat() if expiration_time else None,
        }
        return sub_id

    def requests_to(self, path: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path == path and (method is None or r.method == method)
        ]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    # ── Transport ──

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if self._scripted.get(key):
            return self._scripted[key].pop(0)
        if key in self._pinned:
            return self._pinned[key](request)
        if ("*", "*") in self._pinned:
            return self._pinned[("*", "*")](request)

        path = request.url.path
        if path == "/oauth/token":
            return self._token(request)
        if path.startswith("/v2/webhook/subscription"):
            return self._subscriptions(request)
        if path == "/v2/usercollection/personal_info":
            return httpx.Response(200, json={"id": self.oura_user_id, "email": "ring@example.com"})
        if path.startswith("/v2/usercollection/"):
            return self._collection(request)
        return httpx.Response(404, json={"detail": "not found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "refresh_token":
            self.refresh_count += 1
            n = self.refresh_count
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-refreshed-{n}",
                    "refresh_token": f"refresh-refreshed-{n}",
                    "expires_in": 86400,
                    "token_type": "Bearer",
                },
            )
        return httpx.Response(
            200,
            json={
                "access_token": "access-from-code",
                "refresh_token": "refresh-from-code",
                "expires_in": 86400,
                "token_type": "Bearer",
                "scope": "daily personal",
            },
        )

    def _collection(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.split("/")
        data_type = parts[3]
        docs = self.documents.get(data_type, [])

        if len(parts) > 4:
            object_id = parts[4]
            for doc in docs:
                if doc.get("id") == object_id:
                    return httpx.Response(200, json=doc)
            return httpx.Response(404, json={"detail": "not found"})

        start = request.url.params.get("start_date")
        end = request.url.params.get("end_date")
        matching = [d for d in docs if start <= str(d.get("day", "")) <= end]
        if self.page_size is None:
            return httpx.Response(200, json={"data": matching, "next_token": None})

        offset = int(request.url.params.get("next_token") or 0)
        page = matching[offset : offset + self.page_size]
        next_offset = offset + self.page_size
        next_token = str(next_offset) if next_offset < len(matching) else None
        return httpx.Response(200, json={"data": page, "next_token": next_token})

    def _subscriptions(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.rstrip("/").split("/")
        sub_id = parts[4] if len(parts) > 4 else None

        if request.method == "GET":
            return httpx.Response(200, json=list(self.remote_subscriptions.values()))
        if request.method == "POST":
            body = _json(request)
            new_id = self.add_subscription(
                body["event_type"],
                body["data_type"],
                datetime.now(timezone.utc) + timedelta(days=30),
            )
            self.remote_subscriptions[new_id]["callback_url"] = body["callback_url"]
            return httpx.Response(201, json=self.remote_subscriptions[new_id])
        if sub_id not in self.remote_subscriptions:
            return httpx.Response(404, json={"detail": "not found"})
        if request.method == "PUT":
            sub = self.remote_subscriptions[sub_id]
            sub["expiration_time"] = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()
            return httpx.Response(200, json=sub)
        if request.method == "DELETE":
            del self.remote_subscriptions[sub_id]
            return httpx.Response(204)
        return httpx.Response(405)


def _json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content or b"{}")


def daily_doc(
    data_type: str, day: str, score: float | None = 80, doc_id: str | None = None, **extra: Any
) -> dict[str, Any]:
    """A realistic Oura daily document."""
    doc: dict[str, Any] = {
        "id": doc_id or f"{data_type}-{day}",
        "day": day,
        "score": score,
        "timestamp": f"{day}T00:00:00+00:00",
        "contributors": {"total_sleep": 90, "efficiency": 85}
        if data_type == "daily_sleep"
        else {"activity_balance": 77, "resting_heart_rate": 92},
    }
    doc.update(extra)
    return doc
