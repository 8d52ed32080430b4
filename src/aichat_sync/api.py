"""Async client for the agent REST API (conversations, messages, templates, folders)."""

import logging
from typing import Any, Optional

import httpx

from .config import get_api_base_url
from .core import Conversation, Folder, Message, PromptTemplate
from .errors import ApiError

logger = logging.getLogger(__name__)


class AgentApi:
    """Thin wrapper over the backend's JSON endpoints.

    Every response is an envelope ``{"success": bool, "error": str, ...}``.
    Failures of any kind (transport, HTTP status, ``success: false``,
    malformed body) are raised as :class:`ApiError`.
    """

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or get_api_base_url()).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise ApiError(f"Request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            raise ApiError(
                f"HTTP {response.status_code}: unexpected response body",
                status_code=response.status_code,
            )
        if not response.is_success or not data.get("success", False):
            error = data.get("error") or f"HTTP {response.status_code}"
            raise ApiError(str(error), status_code=response.status_code)
        return data

    # ── Conversations ────────────────────────────────────────────────

    async def list_conversations(
        self, keyword: Optional[str] = None, folder_filter: Optional[str] = None
    ) -> list[Conversation]:
        """List conversations.

        ``folder_filter`` is passed through as the ``folderId`` query value;
        the literal ``"null"`` selects unfiled conversations only.
        """
        params = {}
        if keyword:
            params["keyword"] = keyword
        if folder_filter is not None:
            params["folderId"] = folder_filter
        data = await self._request("GET", "/conversations", params=params)
        return [Conversation.from_api(c) for c in data.get("data") or []]

    async def create_conversation(
        self, title: str, model_name: str, system_prompt: Optional[str] = None
    ) -> Conversation:
        data = await self._request(
            "POST",
            "/conversations",
            json={"title": title, "model_name": model_name, "system_prompt": system_prompt},
        )
        return Conversation.from_api(data["data"])

    async def delete_conversation(self, conversation_id: int) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    # ── Messages ─────────────────────────────────────────────────────

    async def list_messages(self, conversation_id: int) -> list[Message]:
        data = await self._request("GET", "/messages", params={"conversationId": conversation_id})
        return [Message.from_api(m) for m in data.get("messages") or []]

    async def delete_message(self, message_id: int) -> None:
        await self._request("DELETE", f"/messages/{message_id}")

    async def batch_delete_messages(self, message_ids: list[int]) -> None:
        await self._request("DELETE", "/messages/batch", json={"messageIds": list(message_ids)})

    # ── Prompt templates ─────────────────────────────────────────────

    async def list_templates(self) -> list[PromptTemplate]:
        data = await self._request("GET", "/prompts")
        return [PromptTemplate.from_api(t) for t in data.get("data") or []]

    async def create_template(
        self, name: str, content: str, description: Optional[str] = None
    ) -> PromptTemplate:
        data = await self._request(
            "POST", "/prompts", json={"name": name, "content": content, "description": description}
        )
        return PromptTemplate.from_api(data["data"])

    async def update_template(self, template_id: int, **changes: Any) -> PromptTemplate:
        """Patch a template. Accepted fields: name, content, description, is_favorite."""
        data = await self._request("PATCH", f"/prompts/{template_id}", json=changes)
        return PromptTemplate.from_api(data["data"])

    async def delete_template(self, template_id: int) -> None:
        await self._request("DELETE", f"/prompts/{template_id}")

    # ── Folders ──────────────────────────────────────────────────────

    async def list_folders(self) -> list[Folder]:
        data = await self._request("GET", "/folders")
        return [Folder.from_api(f) for f in data.get("data") or []]

    async def create_folder(
        self, name: str, description: Optional[str] = None, color: Optional[str] = None
    ) -> Folder:
        data = await self._request(
            "POST", "/folders", json={"name": name, "description": description, "color": color}
        )
        return Folder.from_api(data["data"])

    async def rename_folder(self, folder_id: str, name: str) -> None:
        await self._request("PUT", f"/folders/{folder_id}", json={"name": name})

    async def delete_folder(self, folder_id: str) -> None:
        await self._request("DELETE", f"/folders/{folder_id}")

    async def add_conversations_to_folder(self, folder_id: str, conversation_ids: list[int]) -> None:
        await self._request(
            "POST",
            f"/folders/{folder_id}/conversations",
            json={"conversationIds": list(conversation_ids)},
        )

    async def remove_conversation_from_folder(self, conversation_id: int) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}/folder")
