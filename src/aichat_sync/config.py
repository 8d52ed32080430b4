"""Environment-driven configuration and shared constants."""

import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_MODEL = "moonshotai/kimi-k2"
DEFAULT_HISTORY_LIMIT = 20

# Storage key holding the persisted settings record
SETTINGS_KEY = "chat_state"

# Seconds between autosaves of the persisted settings
AUTOSAVE_INTERVAL = 30.0

# Maximum silence (seconds) tolerated on a chat stream before giving up
DEFAULT_STREAM_IDLE_TIMEOUT = 120.0


def get_api_base_url() -> str:
    """Return the base URL of the agent REST API."""
    return os.environ.get("AICHAT_SYNC_API_URL", "http://127.0.0.1:8080/api/agent").rstrip("/")


def get_state_path() -> Path:
    """Return the path of the JSON file backing the key-value settings storage."""
    env = os.environ.get("AICHAT_SYNC_STATE_PATH")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "aichat-sync" / "state.json"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "aichat-sync" / "state.json"
    else:  # Linux
        return Path.home() / ".local" / "share" / "aichat-sync" / "state.json"


def get_stream_idle_timeout() -> Optional[float]:
    """Return the stream silence window in seconds, or None when disabled."""
    env = os.environ.get("AICHAT_SYNC_STREAM_TIMEOUT")
    if env is None:
        return DEFAULT_STREAM_IDLE_TIMEOUT
    if env.strip().lower() in ("", "0", "none", "off"):
        return None
    try:
        value = float(env)
    except ValueError:
        return DEFAULT_STREAM_IDLE_TIMEOUT
    return value if value > 0 else None
