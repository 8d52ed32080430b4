"""Tests for environment configuration, the event bus and single-flight bookkeeping."""

import asyncio
import logging
from pathlib import Path

import pytest

from aichat_sync.bus import NOTIFICATION, EventBus, Notification
from aichat_sync.config import (
    DEFAULT_STREAM_IDLE_TIMEOUT,
    get_api_base_url,
    get_state_path,
    get_stream_idle_timeout,
)
from aichat_sync.pending import PendingOperations, single_flight


class TestConfig:
    def test_api_url_override(self, monkeypatch):
        monkeypatch.setenv("AICHAT_SYNC_API_URL", "https://example.com/api/agent/")
        assert get_api_base_url() == "https://example.com/api/agent"

    def test_api_url_default(self, monkeypatch):
        monkeypatch.delenv("AICHAT_SYNC_API_URL", raising=False)
        assert get_api_base_url() == "http://127.0.0.1:8080/api/agent"

    def test_state_path_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AICHAT_SYNC_STATE_PATH", str(tmp_path / "s.json"))
        assert get_state_path() == Path(tmp_path / "s.json")

    @pytest.mark.parametrize(
        "value, expected",
        [(None, DEFAULT_STREAM_IDLE_TIMEOUT), ("45", 45.0), ("0", None), ("off", None), ("junk", DEFAULT_STREAM_IDLE_TIMEOUT)],
    )
    def test_stream_timeout(self, monkeypatch, value, expected):
        if value is None:
            monkeypatch.delenv("AICHAT_SYNC_STREAM_TIMEOUT", raising=False)
        else:
            monkeypatch.setenv("AICHAT_SYNC_STREAM_TIMEOUT", value)
        assert get_stream_idle_timeout() == expected


class TestEventBus:
    def test_failing_handler_does_not_block_others(self, caplog):
        bus = EventBus()
        seen = []

        def broken(payload):
            raise RuntimeError("boom")

        bus.subscribe(NOTIFICATION, broken)
        bus.subscribe(NOTIFICATION, seen.append)
        with caplog.at_level(logging.ERROR, logger="aichat_sync.bus"):
            bus.success("saved")

        assert seen == [Notification("success", "saved")]
        assert "failed" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe("topic", seen.append)
        bus.publish("topic", 1)
        unsubscribe()
        unsubscribe()
        bus.publish("topic", 2)
        assert seen == [1]


class Worker:
    def __init__(self):
        self.pending = PendingOperations()
        self.calls = []
        self.gate = asyncio.Event()

    @single_flight(lambda name: f"job_{name}")
    async def job(self, name):
        self.calls.append(name)
        await self.gate.wait()
        return name


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_same_key_is_skipped(self):
        worker = Worker()
        first = asyncio.create_task(worker.job("a"))
        await asyncio.sleep(0)

        assert await worker.job("a") is None
        other = asyncio.create_task(worker.job("b"))
        await asyncio.sleep(0)
        assert worker.pending.snapshot() == ["job_a", "job_b"]

        worker.gate.set()
        assert await first == "a"
        assert await other == "b"
        assert worker.calls == ["a", "b"]
        assert len(worker.pending) == 0

    @pytest.mark.asyncio
    async def test_key_released_on_cancel(self):
        worker = Worker()
        task = asyncio.create_task(worker.job("a"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert "job_a" not in worker.pending


class TestPendingOperations:
    def test_stale_token_does_not_release_new_owner(self):
        pending = PendingOperations()
        old = pending.add("sync")
        pending.clear()
        new = pending.add("sync")

        pending.discard("sync", old)
        assert "sync" in pending

        pending.discard("sync", new)
        assert "sync" not in pending

    def test_discard_without_token(self):
        pending = PendingOperations()
        pending.add("sync")
        pending.discard("sync")
        pending.discard("missing")
        assert len(pending) == 0
