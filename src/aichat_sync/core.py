"""Core data models for aichat-sync."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Union

from .config import DEFAULT_HISTORY_LIMIT, DEFAULT_MODEL


@dataclass(frozen=True)
class Pending:
    """Identity of a message the server has not stored yet."""

    local_key: str

    @classmethod
    def new(cls) -> "Pending":
        return cls(uuid.uuid4().hex)


@dataclass(frozen=True)
class Persisted:
    """Identity assigned by the server."""

    server_id: int


MessageId = Union[Pending, Persisted]


@dataclass
class Conversation:
    """A chat conversation as listed by the backend."""

    id: int
    title: str
    model_name: str = ""
    system_prompt: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    folder_id: Optional[str] = None  # None means unfiled
    created: Optional[datetime] = None
    updated: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict) -> "Conversation":
        return cls(
            id=int(data["id"]),
            title=data.get("title") or "",
            model_name=data.get("model_name") or "",
            system_prompt=data.get("system_prompt"),
            tags=list(data.get("tags") or []),
            folder_id=_optional_str(data.get("folder_id")),
            created=parse_timestamp(data.get("created_at")),
            updated=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class Message:
    """A single message within a conversation."""

    id: MessageId
    conversation_id: int
    role: str  # "user" | "assistant" | "system"
    content: str
    created_at: Optional[datetime] = None
    tokens_used: Optional[int] = None
    is_streaming: bool = False

    @property
    def server_id(self) -> Optional[int]:
        return self.id.server_id if isinstance(self.id, Persisted) else None

    def evolve(self, **changes) -> "Message":
        return replace(self, **changes)

    @classmethod
    def from_api(cls, data: dict) -> "Message":
        return cls(
            id=Persisted(int(data["id"])),
            conversation_id=int(data["conversation_id"]),
            role=data["role"],
            content=data.get("content") or "",
            created_at=parse_timestamp(data.get("created_at")),
            tokens_used=data.get("tokens_used"),
        )


@dataclass
class PromptTemplate:
    """A reusable system prompt."""

    id: int
    name: str
    content: str
    description: Optional[str] = None
    is_favorite: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict) -> "PromptTemplate":
        return cls(
            id=int(data["id"]),
            # older backends send "title" instead of "name"
            name=data.get("name") or data.get("title") or "",
            content=data.get("content") or "",
            description=data.get("description"),
            is_favorite=bool(data.get("is_favorite", False)),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "description": self.description,
            "is_favorite": self.is_favorite,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Folder:
    """A user folder grouping conversations."""

    id: str
    name: str
    color: str = "#6366f1"
    description: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "Folder":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            color=data.get("color") or "#6366f1",
            description=data.get("description"),
        )


@dataclass
class PersistedSettings:
    """The durable subset of chat state kept across sessions."""

    selected_model: str = DEFAULT_MODEL
    selected_template: Optional[PromptTemplate] = None
    history_limit: int = DEFAULT_HISTORY_LIMIT
    last_sync_time: float = 0.0  # epoch milliseconds

    def to_dict(self) -> dict:
        return {
            "selectedModel": self.selected_model,
            "selectedTemplate": self.selected_template.to_dict() if self.selected_template else None,
            "historyLimit": self.history_limit,
            "lastSyncTime": self.last_sync_time,
        }

    @classmethod
    def from_dict(cls, data) -> "PersistedSettings":
        """Build settings from a stored record, keeping defaults for anything missing or invalid."""
        settings = cls()
        if not isinstance(data, dict):
            return settings

        model = data.get("selectedModel")
        if isinstance(model, str) and model:
            settings.selected_model = model

        template = data.get("selectedTemplate")
        if isinstance(template, dict):
            try:
                settings.selected_template = PromptTemplate.from_api(template)
            except (KeyError, TypeError, ValueError):
                pass

        limit = data.get("historyLimit")
        if isinstance(limit, int) and not isinstance(limit, bool) and limit > 0:
            settings.history_limit = limit

        sync = data.get("lastSyncTime")
        if isinstance(sync, (int, float)) and not isinstance(sync, bool):
            settings.last_sync_time = float(sync)

        return settings


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the API, returning None when absent or invalid."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _optional_str(value) -> Optional[str]:
    if value is None:
        return None
    return str(value)
