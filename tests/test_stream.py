"""Tests for the streaming protocol client."""

import asyncio

import httpx
import pytest

from aichat_sync.core import Pending, Persisted
from aichat_sync.errors import StreamHTTPError, StreamProtocolError, StreamTimeoutError
from aichat_sync.stream import StreamProtocolClient

from .conftest import ScriptedServer, hello_stream, sse, wait_until


class Recorder:
    def __init__(self):
        self.updates = []
        self.created = []

    def on_update(self, user, assistant=None):
        self.updates.append((user, assistant))

    def on_created(self, conversation_id):
        self.created.append(conversation_id)

    @property
    def assistants(self):
        return [a for _, a in self.updates if a is not None]


async def send(client, recorder, conversation_id=None, text="hello"):
    await client.send_stream_message(
        conversation_id, text, "m1", "Be nice", 30, recorder.on_update, recorder.on_created
    )


@pytest.mark.asyncio
async def test_hello_scenario():
    server = ScriptedServer(sse(*hello_stream(conversation_id=7)))
    client = server.client()
    rec = Recorder()

    await send(client, rec)

    assert rec.created == [7]
    user, placeholder = rec.updates[0]
    assert user.id == Persisted(1)
    assert user.content == "hello"
    assert user.conversation_id == 7
    assert isinstance(placeholder.id, Pending)
    assert placeholder.content == ""
    assert placeholder.is_streaming

    contents = [a.content for a in rec.assistants]
    assert contents == ["", "Hi", "Hi there", "Hi there"]

    final = rec.assistants[-1]
    assert final.id == Persisted(2)
    assert final.tokens_used == 12
    assert not final.is_streaming
    assert not client.is_streaming


@pytest.mark.asyncio
async def test_chunks_grow_until_final():
    server = ScriptedServer(sse(*hello_stream()))
    rec = Recorder()
    await send(server.client(), rec)

    streaming = [a for a in rec.assistants if a.is_streaming]
    lengths = [len(a.content) for a in streaming]
    assert lengths == sorted(lengths)

    last, final = streaming[-1], rec.assistants[-1]
    assert last.content == final.content
    assert last.id != final.id
    assert last.is_streaming and not final.is_streaming


@pytest.mark.asyncio
async def test_request_body():
    server = ScriptedServer(sse(*hello_stream()))
    await send(server.client(), Recorder(), conversation_id=7, text="  hello  ")

    request = server.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/api/agent/chat/stream"
    assert server.last_body() == {
        "conversationId": 7,
        "message": "hello",
        "model": "m1",
        "systemPrompt": "Be nice",
        "historyLimit": 30,
    }


@pytest.mark.asyncio
async def test_existing_conversation_does_not_report_creation():
    server = ScriptedServer(sse(*hello_stream(conversation_id=7)))
    rec = Recorder()
    await send(server.client(), rec, conversation_id=7)
    assert rec.created == []


@pytest.mark.asyncio
async def test_blank_text_is_ignored():
    server = ScriptedServer(sse(*hello_stream()))
    await send(server.client(), Recorder(), text="   ")
    assert server.requests == []


@pytest.mark.asyncio
async def test_concurrent_send_is_rejected():
    server = ScriptedServer(sse(*hello_stream()[:1], done=False), hang=True)
    client = server.client()
    rec = Recorder()

    first = asyncio.create_task(send(client, rec))
    await wait_until(lambda: len(rec.updates) == 1)
    await send(client, rec, text="again")
    assert len(server.requests) == 1

    client.stop_streaming()
    await first


@pytest.mark.asyncio
async def test_split_reads_are_reassembled():
    body = sse(*hello_stream())
    chunks = [body[i:i + 7] for i in range(0, len(body), 7)]
    rec = Recorder()
    await send(ScriptedServer(*chunks).client(), rec)
    assert rec.assistants[-1].content == "Hi there"


@pytest.mark.asyncio
async def test_malformed_line_does_not_abort_stream():
    events = hello_stream()
    body = sse(*events[:2], done=False) + b"data: {broken\n\n" + sse(*events[2:])
    rec = Recorder()
    await send(ScriptedServer(body).client(), rec)
    assert rec.assistants[-1].content == "Hi there"
    assert rec.assistants[-1].id == Persisted(2)


@pytest.mark.asyncio
async def test_http_error_status():
    server = ScriptedServer(status_code=500)
    with pytest.raises(StreamHTTPError, match="HTTP 500: Internal Server Error"):
        await send(server.client(), Recorder())


@pytest.mark.asyncio
async def test_empty_body_is_an_error():
    client = ScriptedServer().client()
    with pytest.raises(StreamHTTPError, match="no stream data"):
        await send(client, Recorder())
    assert not client.is_streaming


@pytest.mark.asyncio
async def test_error_event_raises_and_releases_placeholder():
    events = hello_stream()[:2] + [{"type": "error", "error": "rate limit exceeded"}]
    client = ScriptedServer(sse(*events)).client()
    rec = Recorder()

    with pytest.raises(StreamProtocolError, match="rate limit exceeded"):
        await send(client, rec)

    last = rec.assistants[-1]
    assert last.content == "Hi"
    assert not last.is_streaming
    assert isinstance(last.id, Pending)
    assert not client.is_streaming


@pytest.mark.asyncio
async def test_stop_streaming_exits_quietly():
    server = ScriptedServer(sse(*hello_stream()[:2], done=False), hang=True)
    client = server.client()
    rec = Recorder()

    task = asyncio.create_task(send(client, rec))
    await wait_until(lambda: client.streaming_content == "Hi")
    client.stop_streaming()
    await task  # no exception

    assert not client.is_streaming
    assert client.streaming_content == ""
    last = rec.assistants[-1]
    assert last.content == "Hi"
    assert not last.is_streaming


@pytest.mark.asyncio
async def test_outer_cancellation_still_propagates():
    server = ScriptedServer(sse(*hello_stream()[:1], done=False), hang=True)
    client = server.client()
    rec = Recorder()

    task = asyncio.create_task(send(client, rec))
    await wait_until(lambda: len(rec.updates) == 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not client.is_streaming


@pytest.mark.asyncio
async def test_read_timeout_is_reported():
    server = ScriptedServer(sse(*hello_stream()[:1], done=False), error=httpx.ReadTimeout("silence"))
    rec = Recorder()
    with pytest.raises(StreamTimeoutError):
        await send(server.client(), rec)
    assert not rec.assistants[-1].is_streaming


@pytest.mark.asyncio
async def test_transport_error_is_wrapped():
    def refuse(request):
        raise httpx.ConnectError("connection refused")

    client = StreamProtocolClient(
        "http://test/api/agent", client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    )
    with pytest.raises(StreamHTTPError, match="connection refused"):
        await send(client, Recorder())


@pytest.mark.asyncio
async def test_replayed_init_creates_fresh_placeholder():
    events = hello_stream()
    body = sse(events[0], events[1], events[0], done=False)
    rec = Recorder()
    await send(ScriptedServer(body).client(), rec)

    # second init restarts accumulation; placeholder is released at the end
    assert rec.assistants[-1].content == ""
    assert rec.created == [7]
