"""Event types and line framing for the chat completion stream.

The stream body is a sequence of ``data: <json>`` lines, each JSON object
tagged by a ``type`` field (init, chunk, final, error, done). A literal
``data: [DONE]`` line may mark the end of the stream and carries no event.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class InitEvent:
    conversation_id: int
    user_message_id: int
    user_content: str
    user_created_at: Optional[str] = None


@dataclass(frozen=True)
class ChunkEvent:
    content: str


@dataclass(frozen=True)
class FinalEvent:
    message_id: int
    content: str
    tokens_used: Optional[int] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    error: str


@dataclass(frozen=True)
class DoneEvent:
    pass


StreamEvent = Union[InitEvent, ChunkEvent, FinalEvent, ErrorEvent, DoneEvent]


def event_from_payload(payload: dict) -> Optional[StreamEvent]:
    """Convert a decoded JSON payload to an event.

    Raises KeyError/TypeError/ValueError when a known event lacks its fields.
    Returns None for unknown ``type`` tags.
    """
    kind = payload.get("type")
    if kind == "init":
        user = payload["userMessage"]
        return InitEvent(
            conversation_id=int(payload["conversationId"]),
            user_message_id=int(user["id"]),
            user_content=str(user["content"]),
            user_created_at=user.get("created_at"),
        )
    if kind == "chunk":
        return ChunkEvent(content=str(payload.get("content") or ""))
    if kind == "final":
        assistant = payload["assistant"]
        tokens = assistant.get("tokensUsed")
        return FinalEvent(
            message_id=int(assistant["id"]),
            content=str(assistant.get("content") or ""),
            tokens_used=int(tokens) if tokens is not None else None,
            created_at=assistant.get("created_at"),
        )
    if kind == "error":
        return ErrorEvent(error=str(payload.get("error") or ""))
    if kind == "done":
        return DoneEvent()
    return None


def encode_event(event: StreamEvent) -> bytes:
    """Serialize an event as one ``data:`` line followed by a blank line."""
    if isinstance(event, InitEvent):
        payload = {
            "type": "init",
            "conversationId": event.conversation_id,
            "userMessage": {
                "id": event.user_message_id,
                "content": event.user_content,
                "created_at": event.user_created_at,
            },
        }
    elif isinstance(event, ChunkEvent):
        payload = {"type": "chunk", "content": event.content}
    elif isinstance(event, FinalEvent):
        payload = {
            "type": "final",
            "assistant": {
                "id": event.message_id,
                "content": event.content,
                "tokensUsed": event.tokens_used,
                "created_at": event.created_at,
            },
        }
    elif isinstance(event, ErrorEvent):
        payload = {"type": "error", "error": event.error}
    elif isinstance(event, DoneEvent):
        payload = {"type": "done"}
    else:
        raise TypeError(f"Unknown stream event: {event!r}")
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class StreamParser:
    """Incremental ``bytes -> events`` parser, independent of any transport."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[StreamEvent]:
        """Consume raw bytes and return the events completed by them."""
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        # The last fragment may be an incomplete line
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def close(self) -> list[StreamEvent]:
        """Flush the decoder and parse a final line lacking its newline."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse_lines([rest])

    def _parse_lines(self, lines: list[str]) -> list[StreamEvent]:
        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, line: str) -> Optional[StreamEvent]:
        trimmed = line.strip()
        if not trimmed.startswith(DATA_PREFIX):
            return None

        data = trimmed[len(DATA_PREFIX):]
        if data == DONE_SENTINEL:
            return None

        try:
            payload = json.loads(data)
            if not isinstance(payload, dict):
                raise ValueError("event payload is not an object")
            event = event_from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed stream line %r: %s", data[:200], e)
            return None

        if event is None:
            logger.warning("Skipping stream event with unknown type %r", payload.get("type"))
        return event
