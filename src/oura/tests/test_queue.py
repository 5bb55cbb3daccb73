"""Tests for queue messages, dispatch, and the in-process queue."""

from __future__ import annotations

from datetime import date

import pydantic
import pytest

from src.oura.base import SyncMode
from src.oura.sync.queue import (
    InMemorySyncQueue,
    SyncRangeMessage,
    WebhookEventMessage,
    dispatch_message,
    parse_message,
)


class RecordingOrchestrator:
    """Stands in for SyncOrchestrator; fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple] = []

    async def sync_range(self, install_id, start, end, mode, run_id=None):
        self.calls.append(("sync_range", install_id, start, end, mode, run_id))
        if len(self.calls) <= self.failures:
            raise RuntimeError("provider down")

    async def process_webhook_event(self, install_id, event_type, data_type, object_id):
        self.calls.append(("webhook", install_id, event_type, data_type, object_id))
        return 1


def _range_message() -> SyncRangeMessage:
    return SyncRangeMessage(
        install_id="install_1",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        mode=SyncMode.DELTA,
    )


class TestParseMessage:
    def test_sync_range_from_json(self):
        message = parse_message(
            '{"type":"sync_range","install_id":"i","start_date":"2024-01-01",'
            '"end_date":"2024-01-02","mode":"backfill"}'
        )
        assert isinstance(message, SyncRangeMessage)
        assert message.mode == SyncMode.BACKFILL
        assert message.end_date == date(2024, 1, 2)
        assert message.sync_run_id is None

    def test_webhook_event_from_dict(self):
        message = parse_message(
            {
                "type": "webhook_event",
                "install_id": "i",
                "event_type": "update",
                "data_type": "daily_sleep",
                "object_id": "o",
            }
        )
        assert isinstance(message, WebhookEventMessage)
        assert message.object_id == "o"

    def test_serialized_message_round_trips(self):
        message = _range_message()
        assert parse_message(message.model_dump_json()) == message

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "unknown"},
            {"type": "sync_range", "install_id": "i"},
            {
                "type": "webhook_event",
                "install_id": "i",
                "event_type": "rename",
                "data_type": "daily_sleep",
                "object_id": "o",
            },
        ],
    )
    def test_invalid_messages(self, payload):
        with pytest.raises(pydantic.ValidationError):
            parse_message(payload)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sync_range(self):
        orchestrator = RecordingOrchestrator()
        message = _range_message().model_copy(update={"sync_run_id": "sync_1"})

        await dispatch_message(orchestrator, message)

        assert orchestrator.calls == [
            ("sync_range", "install_1", date(2024, 1, 1), date(2024, 1, 31), SyncMode.DELTA, "sync_1")
        ]

    @pytest.mark.asyncio
    async def test_webhook_event(self):
        orchestrator = RecordingOrchestrator()
        await dispatch_message(
            orchestrator,
            WebhookEventMessage(
                install_id="install_1", event_type="create", data_type="daily_sleep", object_id="o"
            ),
        )
        assert orchestrator.calls == [("webhook", "install_1", "create", "daily_sleep", "o")]

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        with pytest.raises(RuntimeError):
            await dispatch_message(RecordingOrchestrator(failures=1), _range_message())


class TestInMemorySyncQueue:
    @pytest.mark.asyncio
    async def test_delivers_messages(self):
        orchestrator = RecordingOrchestrator()
        queue = InMemorySyncQueue(orchestrator)
        queue.start()
        try:
            await queue.send(_range_message())
            await queue.drain()
        finally:
            await queue.stop()
        assert len(orchestrator.calls) == 1

    @pytest.mark.asyncio
    async def test_redelivers_failed_message(self):
        orchestrator = RecordingOrchestrator(failures=2)
        queue = InMemorySyncQueue(orchestrator, max_attempts=3)
        queue.start()
        try:
            await queue.send(_range_message())
            await queue.drain()
        finally:
            await queue.stop()
        assert len(orchestrator.calls) == 3

    @pytest.mark.asyncio
    async def test_drops_after_max_attempts(self):
        orchestrator = RecordingOrchestrator(failures=10)
        queue = InMemorySyncQueue(orchestrator, max_attempts=3)
        queue.start()
        try:
            await queue.send(_range_message())
            await queue.send(
                WebhookEventMessage(
                    install_id="install_1", event_type="update", data_type="daily_sleep", object_id="o"
                )
            )
            await queue.drain()
        finally:
            await queue.stop()

        sync_calls = [c for c in orchestrator.calls if c[0] == "sync_range"]
        webhook_calls = [c for c in orchestrator.calls if c[0] == "webhook"]
        assert len(sync_calls) == 3
        assert len(webhook_calls) == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await InMemorySyncQueue(RecordingOrchestrator()).stop()
