"""Shared test fixtures for aichat-sync."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from httpx import ASGITransport

import aichat_sync.server as srv
from aichat_sync.api import AgentApi
from aichat_sync.bus import NOTIFICATION, EventBus
from aichat_sync.core import Conversation
from aichat_sync.dataflow import DataFlowCoordinator
from aichat_sync.storage import MemoryStorage
from aichat_sync.store import ConversationStore
from aichat_sync.stream import StreamProtocolClient

BASE_URL = "http://test/api/agent"


def sse(*payloads, done=True) -> bytes:
    """Encode payloads as a chat stream body."""
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def hello_stream(conversation_id=7) -> list[dict]:
    return [
        {"type": "init", "conversationId": conversation_id, "userMessage": {"id": 1, "content": "hello"}},
        {"type": "chunk", "content": "Hi"},
        {"type": "chunk", "content": " there"},
        {"type": "final", "assistant": {"id": 2, "content": "Hi there", "tokensUsed": 12}},
        {"type": "done"},
    ]


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class ScriptedServer:
    """httpx transport replaying stream bodies and recording requests."""

    def __init__(self, *chunks: bytes, status_code: int = 200, hang: bool = False, error: Exception | None = None):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.hang = hang
        self.error = error
        self.requests: list[httpx.Request] = []
        self.released = asyncio.Event()

    async def _body(self):
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await self.released.wait()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, content=b"boom")
        return httpx.Response(200, content=self._body(), headers={"content-type": "text/event-stream"})

    def client(self) -> StreamProtocolClient:
        transport = httpx.MockTransport(self.handler)
        return StreamProtocolClient(BASE_URL, client=httpx.AsyncClient(transport=transport), idle_timeout=None)

    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture(autouse=True)
def reset_dev_db():
    """Reset the dev backend's database before each test."""
    srv._db = None
    yield
    srv._db = None


@pytest.fixture
def mock_api():
    api = AsyncMock(spec=AgentApi)
    api.list_conversations.return_value = []
    api.list_messages.return_value = []
    api.list_templates.return_value = []
    api.list_folders.return_value = []
    return api


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def bus(notifications):
    bus = EventBus()
    bus.subscribe(NOTIFICATION, notifications.append)
    return bus


@pytest.fixture
def make_store(mock_api, bus):
    """Build a store over the mock API and a scripted stream server."""

    def factory(server: ScriptedServer | None = None) -> ConversationStore:
        stream = (server or ScriptedServer(sse(*hello_stream()))).client()
        return ConversationStore(mock_api, stream, bus=bus)

    return factory


@pytest.fixture
def sample_conversation():
    return Conversation(id=7, title="Greetings", model_name="moonshotai/kimi-k2")


@pytest.fixture
def asgi_client():
    """httpx client routed to the in-memory dev backend."""
    return httpx.AsyncClient(transport=ASGITransport(app=srv.app), base_url="http://test")


@pytest.fixture
def live_flow(asgi_client, bus):
    """Full stack (API, stream client, store, coordinator) over the dev backend."""
    api = AgentApi(BASE_URL, client=asgi_client)
    stream = StreamProtocolClient(BASE_URL, client=asgi_client, idle_timeout=None)
    store = ConversationStore(api, stream, bus=bus)
    return DataFlowCoordinator(store, MemoryStorage(), autosave_interval=3600)
