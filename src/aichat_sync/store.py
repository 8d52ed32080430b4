"""Authoritative in-memory chat state and the actions that mutate it.

The store translates user intents into REST calls, merges streamed replies
into the message list, and reports failures through its ``error`` attribute
and the event bus instead of raising into callers.
"""

import logging
from collections.abc import Callable
from typing import Optional

from .api import AgentApi
from .bus import SETTINGS_CHANGED, STREAM_COMPLETED, EventBus
from .config import DEFAULT_HISTORY_LIMIT, DEFAULT_MODEL
from .core import Conversation, Folder, Message, PromptTemplate
from .errors import ChatSyncError, friendly_error_message
from .pending import PendingOperations, single_flight
from .stream import StreamProtocolClient

logger = logging.getLogger(__name__)

# folderId query value selecting conversations that belong to no folder
UNFILED_FILTER = "null"


def _find_index(messages: list[Message], predicate: Callable[[Message], bool]) -> Optional[int]:
    for i, msg in enumerate(messages):
        if predicate(msg):
            return i
    return None


class ConversationStore:
    """Single source of truth for conversations, messages, templates and folders."""

    def __init__(
        self,
        api: AgentApi,
        stream: StreamProtocolClient,
        bus: Optional[EventBus] = None,
        pending: Optional[PendingOperations] = None,
    ):
        self.api = api
        self.stream = stream
        self.bus = bus or EventBus()
        self.pending = pending or PendingOperations()

        self.current_conversation_id: Optional[int] = None
        self.messages: list[Message] = []
        self.selected_model: str = DEFAULT_MODEL
        self.selected_template: Optional[PromptTemplate] = None
        self.system_prompt: str = ""

        self.conversations: list[Conversation] = []
        self.templates: list[PromptTemplate] = []
        self.folders: list[Folder] = []
        self.selected_folder_id: Optional[str] = None  # None shows unfiled conversations

        self.loading = False
        self.conversations_loading = False
        self.folders_loading = False
        self.error: Optional[str] = None

        self.search_keyword: str = ""
        self.history_limit: int = DEFAULT_HISTORY_LIMIT

    @property
    def is_streaming(self) -> bool:
        return self.stream.is_streaming

    @property
    def current_conversation(self) -> Optional[Conversation]:
        for conv in self.conversations:
            if conv.id == self.current_conversation_id:
                return conv
        return None

    def report_error(self, message: str) -> None:
        logger.error(message)
        self.error = message
        self.bus.error(message)

    def clear_error(self) -> None:
        self.error = None

    # ── Loading ──────────────────────────────────────────────────────

    @single_flight("sync_conversations")
    async def load_conversations(self) -> None:
        self.conversations_loading = True
        folder_filter = UNFILED_FILTER if self.selected_folder_id is None else self.selected_folder_id
        try:
            self.conversations = await self.api.list_conversations(
                keyword=self.search_keyword or None, folder_filter=folder_filter
            )
        except ChatSyncError as e:
            self.report_error(f"Failed to load conversations: {e}")
        finally:
            self.conversations_loading = False

    @single_flight(lambda conversation_id: f"sync_messages_{conversation_id}")
    async def load_messages(self, conversation_id: Optional[int]) -> None:
        # Conversations created by a send have no id until the stream's init event
        if not conversation_id or conversation_id <= 0:
            logger.warning("load_messages: invalid conversation id %r", conversation_id)
            return

        try:
            messages = await self.api.list_messages(conversation_id)
        except ChatSyncError as e:
            self.report_error(f"Failed to load messages: {e}")
            return

        # The user may have switched conversations while the request was out
        if self.current_conversation_id != conversation_id:
            logger.info("Dropping messages for conversation %s: no longer selected", conversation_id)
            return
        self.messages = messages

    async def load_templates(self) -> None:
        try:
            self.templates = await self.api.list_templates()
        except ChatSyncError as e:
            self.report_error(f"Failed to load prompt templates: {e}")

    async def load_folders(self) -> None:
        self.folders_loading = True
        try:
            self.folders = await self.api.list_folders()
        except ChatSyncError as e:
            self.report_error(f"Failed to load folders: {e}")
        finally:
            self.folders_loading = False

    # ── Conversations ────────────────────────────────────────────────

    async def select_conversation(self, conversation: Conversation) -> None:
        self.current_conversation_id = conversation.id
        self.messages = []
        await self.load_messages(conversation.id)

    def create_new_conversation(self) -> None:
        """Start a fresh conversation locally; the server assigns its id on the first send."""
        self.current_conversation_id = None
        self.messages = []
        self.system_prompt = self.selected_template.content if self.selected_template else ""

    async def delete_conversation(self, conversation_id: int) -> None:
        try:
            await self.api.delete_conversation(conversation_id)
        except ChatSyncError as e:
            self.report_error(f"Failed to delete conversation: {e}")
            return

        await self.load_conversations()
        if self.current_conversation_id == conversation_id:
            self.current_conversation_id = None
            self.messages = []
        self.bus.success("Conversation deleted")

    # ── Messages ─────────────────────────────────────────────────────

    async def send_message(self, text: str) -> None:
        """Send ``text`` in the current conversation and merge the streamed reply.

        Ignored while a previous send is still loading or streaming.
        """
        text = text.strip()
        if not text or self.loading or self.is_streaming:
            return

        self.loading = True
        self.error = None
        try:
            await self.stream.send_stream_message(
                self.current_conversation_id,
                text,
                self.selected_model,
                self.system_prompt,
                self.history_limit,
                self.merge_stream_update,
                self._on_conversation_created,
            )
        except ChatSyncError as e:
            self.report_error(f"Failed to send message: {friendly_error_message(str(e))}")
        finally:
            self.loading = False

        self.bus.publish(STREAM_COMPLETED, self.current_conversation_id)
        # Titles and timestamps are computed server side
        await self.load_conversations()

    def merge_stream_update(self, user_message: Message, assistant_message: Optional[Message] = None) -> None:
        """Apply one streamed update to the message list, replacing entries instead of appending duplicates."""
        messages = list(self.messages)

        i = _find_index(messages, lambda m: m.role == "user" and m.content == user_message.content)
        if i is not None:
            messages[i] = user_message
        else:
            messages.append(user_message)

        if assistant_message is not None:
            i = _find_index(
                messages,
                lambda m: (
                    m.role == "assistant"
                    and m.conversation_id == assistant_message.conversation_id
                    and (m.id == assistant_message.id or m.is_streaming)
                ),
            )
            if i is not None:
                messages[i] = assistant_message
            else:
                messages.append(assistant_message)

        self.messages = messages

    def _on_conversation_created(self, conversation_id: int) -> None:
        if not self.current_conversation_id:
            self.current_conversation_id = conversation_id

    def stop_streaming(self) -> None:
        self.stream.stop_streaming()

    async def delete_message(self, message_id: int) -> bool:
        try:
            await self.api.delete_message(message_id)
        except ChatSyncError as e:
            self.report_error(f"Failed to delete message: {e}")
            return False

        self.messages = [m for m in self.messages if m.server_id != message_id]
        self.bus.success("Message deleted")
        return True

    async def batch_delete_messages(self, message_ids: list[int]) -> None:
        if not message_ids:
            return
        try:
            await self.api.batch_delete_messages(message_ids)
        except ChatSyncError as e:
            self.report_error(f"Failed to delete messages: {e}")
            return

        doomed = set(message_ids)
        self.messages = [m for m in self.messages if m.server_id not in doomed]
        self.bus.success(f"Deleted {len(message_ids)} messages")

    async def regenerate_last_response(self) -> None:
        """Delete the last reply (if it answers the last user message) and send that message again."""
        if self.current_conversation_id is None or not self.messages:
            return
        if self.loading or self.is_streaming:
            return

        last_user = next((m for m in reversed(self.messages) if m.role == "user"), None)
        if last_user is None:
            return
        last_assistant = next((m for m in reversed(self.messages) if m.role == "assistant"), None)

        if last_assistant is not None and self._is_newer(last_assistant, last_user):
            if last_assistant.server_id is None:
                # Never persisted (e.g. an aborted reply): only drop the local copy
                self.messages = [m for m in self.messages if m is not last_assistant]
            elif not await self.delete_message(last_assistant.server_id):
                return

        await self.send_message(last_user.content)

    def _is_newer(self, a: Message, b: Message) -> bool:
        if a.server_id is not None and b.server_id is not None:
            return a.server_id > b.server_id
        return self.messages.index(a) > self.messages.index(b)

    # ── Settings ─────────────────────────────────────────────────────

    def set_selected_model(self, model: str) -> None:
        self.selected_model = model
        self.bus.publish(SETTINGS_CHANGED, "selected_model")

    def set_selected_template(self, template: Optional[PromptTemplate]) -> None:
        self.selected_template = template
        self.system_prompt = template.content if template else ""
        self.bus.publish(SETTINGS_CHANGED, "selected_template")

    def set_history_limit(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"history limit must be positive, got {limit}")
        self.history_limit = limit
        self.bus.publish(SETTINGS_CHANGED, "history_limit")

    async def set_search_keyword(self, keyword: str) -> None:
        self.search_keyword = keyword
        await self.load_conversations()

    # ── Prompt templates ─────────────────────────────────────────────

    async def create_template(self, name: str, content: str, description: Optional[str] = None) -> None:
        try:
            await self.api.create_template(name, content, description)
        except ChatSyncError as e:
            self.report_error(f"Failed to create template: {e}")
            return
        self.bus.success(f'Template "{name}" created')
        await self.load_templates()

    async def update_template(self, template_id: int, **changes) -> None:
        try:
            await self.api.update_template(template_id, **changes)
        except ChatSyncError as e:
            self.report_error(f"Failed to update template: {e}")
            return
        self.bus.success("Template updated")
        await self.load_templates()

    async def delete_template(self, template_id: int) -> None:
        try:
            await self.api.delete_template(template_id)
        except ChatSyncError as e:
            self.report_error(f"Failed to delete template: {e}")
            return

        self.bus.success("Template deleted")
        await self.load_templates()
        if self.selected_template is not None and self.selected_template.id == template_id:
            # The prompt already copied into system_prompt stays in effect
            self.selected_template = None
            self.bus.publish(SETTINGS_CHANGED, "selected_template")

    # ── Folders ──────────────────────────────────────────────────────

    async def select_folder(self, folder_id: Optional[str]) -> None:
        self.selected_folder_id = folder_id
        await self.load_conversations()

    async def create_folder(
        self, name: str, description: Optional[str] = None, color: Optional[str] = None
    ) -> None:
        try:
            await self.api.create_folder(name, description, color)
        except ChatSyncError as e:
            self.report_error(f"Failed to create folder: {e}")
            return
        self.bus.success(f'Folder "{name}" created')
        await self.load_folders()

    async def rename_folder(self, folder_id: str, new_name: str) -> None:
        try:
            await self.api.rename_folder(folder_id, new_name)
        except ChatSyncError as e:
            self.report_error(f"Failed to rename folder: {e}")
            return
        self.bus.success("Folder renamed")
        await self.load_folders()

    async def delete_folder(self, folder_id: str) -> None:
        try:
            await self.api.delete_folder(folder_id)
        except ChatSyncError as e:
            self.report_error(f"Failed to delete folder: {e}")
            return

        self.bus.success("Folder deleted")
        await self.load_folders()
        if self.selected_folder_id == folder_id:
            self.selected_folder_id = None
            await self.load_conversations()

    async def move_conversation_to_folder(self, conversation_id: int, folder_id: Optional[str]) -> None:
        """File a conversation under ``folder_id``, or unfile it when ``folder_id`` is None."""
        try:
            if folder_id:
                await self.api.add_conversations_to_folder(folder_id, [conversation_id])
            else:
                await self.api.remove_conversation_from_folder(conversation_id)
        except ChatSyncError as e:
            self.report_error(f"Failed to move conversation: {e}")
            return

        self.bus.success("Conversation moved")
        await self.load_conversations()
