"""Client for the streaming chat completion endpoint.

One call to :meth:`StreamProtocolClient.send_stream_message` performs exactly
one request/response exchange and reports progress through callbacks. The
client knows nothing about conversation state beyond what the events carry.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import get_api_base_url, get_stream_idle_timeout
from .core import Message, Pending, Persisted, parse_timestamp
from .errors import StreamHTTPError, StreamProtocolError, StreamTimeoutError
from .protocol import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    FinalEvent,
    InitEvent,
    StreamEvent,
    StreamParser,
)

logger = logging.getLogger(__name__)

OnUpdate = Callable[[Message, Optional[Message]], None]
OnConversationCreated = Callable[[int], None]

_UNSET = object()


@dataclass
class _Exchange:
    """Mutable state of one in-flight exchange."""

    conversation_id: Optional[int]
    on_update: OnUpdate
    on_conversation_created: Optional[OnConversationCreated]
    is_new: bool
    created_notified: bool = False
    user: Optional[Message] = None
    assistant: Optional[Message] = None
    content: str = ""

    def publish(self) -> None:
        if self.user is not None:
            self.on_update(self.user, self.assistant)

    def release_placeholder(self) -> None:
        """Make sure no reply is left marked as streaming."""
        if self.assistant is not None and self.assistant.is_streaming:
            self.assistant = self.assistant.evolve(is_streaming=False)
            self.publish()


class StreamProtocolClient:
    """Speaks the ``data: <json>`` chat stream protocol over httpx."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        idle_timeout=_UNSET,
    ):
        self.base_url = (base_url or get_api_base_url()).rstrip("/")
        self._client = client
        self.idle_timeout: Optional[float] = (
            get_stream_idle_timeout() if idle_timeout is _UNSET else idle_timeout
        )
        self.is_streaming = False
        self.streaming_content = ""
        self._task: Optional[asyncio.Task] = None
        self._aborted = False

    async def send_stream_message(
        self,
        conversation_id: Optional[int],
        text: str,
        model: str,
        system_prompt: str,
        history_limit: int,
        on_update: OnUpdate,
        on_conversation_created: Optional[OnConversationCreated] = None,
    ) -> None:
        """Send one message and stream the reply through ``on_update``.

        Returns without doing anything when ``text`` is blank or another
        stream is active on this client. Returns quietly when cancelled via
        :meth:`stop_streaming`. Raises a :class:`StreamError` subclass on
        HTTP, protocol or timeout failures.
        """
        message = text.strip()
        if not message or self.is_streaming:
            return

        self.is_streaming = True
        self.streaming_content = ""
        self._aborted = False

        exchange = _Exchange(
            conversation_id=conversation_id,
            on_update=on_update,
            on_conversation_created=on_conversation_created,
            is_new=conversation_id is None,
        )
        body = {
            "conversationId": conversation_id,
            "message": message,
            "model": model,
            "systemPrompt": system_prompt,
            "historyLimit": history_limit,
        }

        task = asyncio.create_task(self._run(exchange, body))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            logger.info("Stream cancelled by caller")
        finally:
            exchange.release_placeholder()
            if self._task is task:
                self._task = None
            self.is_streaming = False
            self.streaming_content = ""

    def stop_streaming(self) -> None:
        """Abort the in-flight exchange, if any. The sender returns without error."""
        if self._task is not None and not self._task.done():
            self._aborted = True
            self._task.cancel()

    async def _run(self, exchange: _Exchange, body: dict) -> None:
        if self._client is not None:
            await self._exchange(self._client, exchange, body)
        else:
            async with httpx.AsyncClient() as client:
                await self._exchange(client, exchange, body)

    async def _exchange(self, client: httpx.AsyncClient, exchange: _Exchange, body: dict) -> None:
        url = f"{self.base_url}/chat/stream"
        timeout = httpx.Timeout(10.0, read=self.idle_timeout)
        try:
            async with client.stream("POST", url, json=body, timeout=timeout) as response:
                if not response.is_success:
                    raise StreamHTTPError(f"HTTP {response.status_code}: {response.reason_phrase}")

                parser = StreamParser()
                received = False
                async for data in response.aiter_bytes():
                    if not data:
                        continue
                    received = True
                    for event in parser.feed(data):
                        self._dispatch(exchange, event)

                if not received:
                    raise StreamHTTPError("Response contained no stream data")
                for event in parser.close():
                    self._dispatch(exchange, event)
        except httpx.TimeoutException as e:
            raise StreamTimeoutError(f"No stream data received within {self.idle_timeout}s") from e
        except httpx.HTTPError as e:
            raise StreamHTTPError(str(e) or type(e).__name__) from e

        if exchange.assistant is not None and exchange.assistant.is_streaming:
            logger.warning("Stream ended before the final event")

    def _dispatch(self, exchange: _Exchange, event: StreamEvent) -> None:
        if isinstance(event, InitEvent):
            self._on_init(exchange, event)
        elif isinstance(event, ChunkEvent):
            self._on_chunk(exchange, event)
        elif isinstance(event, FinalEvent):
            self._on_final(exchange, event)
        elif isinstance(event, ErrorEvent):
            raise StreamProtocolError(event.error)
        elif isinstance(event, DoneEvent):
            logger.debug("Stream reported done")
        else:
            raise TypeError(f"Unhandled stream event: {event!r}")

    def _on_init(self, exchange: _Exchange, event: InitEvent) -> None:
        now = datetime.now(timezone.utc)
        exchange.conversation_id = event.conversation_id

        if exchange.is_new and not exchange.created_notified:
            exchange.created_notified = True
            if exchange.on_conversation_created is not None:
                exchange.on_conversation_created(event.conversation_id)

        exchange.user = Message(
            id=Persisted(event.user_message_id),
            conversation_id=event.conversation_id,
            role="user",
            content=event.user_content,
            created_at=parse_timestamp(event.user_created_at) or now,
        )
        exchange.assistant = Message(
            id=Pending.new(),
            conversation_id=event.conversation_id,
            role="assistant",
            content="",
            created_at=now,
            is_streaming=True,
        )
        exchange.content = ""
        exchange.publish()

    def _on_chunk(self, exchange: _Exchange, event: ChunkEvent) -> None:
        if not event.content:
            return
        if exchange.assistant is None:
            logger.warning("Ignoring chunk received before init")
            return
        exchange.content += event.content
        self.streaming_content = exchange.content
        exchange.assistant = exchange.assistant.evolve(content=exchange.content)
        exchange.publish()

    def _on_final(self, exchange: _Exchange, event: FinalEvent) -> None:
        if exchange.assistant is None:
            logger.warning("Ignoring final event received before init")
            return
        exchange.assistant = exchange.assistant.evolve(
            id=Persisted(event.message_id),
            content=event.content or exchange.content,
            tokens_used=event.tokens_used,
            created_at=parse_timestamp(event.created_at) or exchange.assistant.created_at,
            is_streaming=False,
        )
        exchange.publish()
        logger.info(
            "Stream finished for conversation %s (%d chars, %s tokens)",
            exchange.conversation_id, len(exchange.assistant.content), event.tokens_used,
        )
