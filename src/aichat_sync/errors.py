"""Exception hierarchy and user-facing error messages."""

import json
from typing import Optional


class ChatSyncError(Exception):
    """Base class for every failure raised by aichat-sync."""


class ApiError(ChatSyncError):
    """A REST call failed or the backend reported ``success: false``."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamError(ChatSyncError):
    """A chat stream exchange failed."""


class StreamHTTPError(StreamError):
    """The stream request returned a non-success status or no body."""


class StreamProtocolError(StreamError):
    """The server sent an explicit ``error`` event."""


class StreamTimeoutError(StreamError):
    """No data arrived on the stream within the configured silence window."""


# Errors already formatted by the AI gateway are shown as they are
_PREFORMATTED = ("AI请求失败:", "AI返回数据格式错误")

# (needles, replacement) checked in order against the raw error text
_KNOWN_ERRORS = [
    (("rate limit", "频率限制"), "Too many requests, please try again later"),
    (("insufficient credits", "余额不足"), "AI service balance is insufficient, contact the administrator"),
    (("model not found", "模型不存在"), "The selected model is unavailable, try another model"),
    (("timeout", "超时"), "Request timed out, check the network connection or try again later"),
]


def friendly_error_message(error: str) -> str:
    """Rewrite a raw upstream error into a message fit for the user.

    JSON error bodies are unwrapped first. Known upstream conditions (rate
    limiting, exhausted quota, unknown model, timeouts) are matched by
    case-sensitive substring and replaced; anything else is returned
    unchanged.
    """
    if not error:
        return "Unknown error"
    if any(marker in error for marker in _PREFORMATTED):
        return error

    try:
        payload = json.loads(error)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        inner = payload.get("error")
        if isinstance(inner, dict) and inner.get("message"):
            return f"AI service error: {inner['message']}"
        if payload.get("message"):
            return str(payload["message"])

    for needles, replacement in _KNOWN_ERRORS:
        if any(needle in error for needle in needles):
            return replacement

    return error
