"""Cross-cutting orchestration above the conversation store.

Provides one-time initialization, single-flight execution of expensive
operations, persistence of the durable settings subset, and the error
recovery procedure.
"""

import asyncio
import contextlib
import json
import logging
import time
from typing import Optional

from .bus import SETTINGS_CHANGED
from .config import AUTOSAVE_INTERVAL, SETTINGS_KEY
from .core import PersistedSettings
from .errors import ChatSyncError
from .pending import single_flight
from .storage import KeyValueStorage
from .store import ConversationStore

logger = logging.getLogger(__name__)

CACHE_TYPES = ("conversations", "messages", "templates")


def _now_ms() -> float:
    return time.time() * 1000


class DataFlowCoordinator:
    """Coordinates loading, dedup, persistence and recovery for a :class:`ConversationStore`."""

    def __init__(
        self,
        store: ConversationStore,
        storage: KeyValueStorage,
        autosave_interval: float = AUTOSAVE_INTERVAL,
        settings_key: str = SETTINGS_KEY,
    ):
        self.store = store
        self.storage = storage
        self.pending = store.pending
        self.autosave_interval = autosave_interval
        self.settings_key = settings_key

        self.is_initialized = False
        self.last_sync_time: float = 0.0
        self._autosave_task: Optional[asyncio.Task] = None
        self._unsubscribe = store.bus.subscribe(SETTINGS_CHANGED, self._on_settings_changed)

    # ── Persistence ──────────────────────────────────────────────────

    def save_state_to_storage(self) -> None:
        settings = PersistedSettings(
            selected_model=self.store.selected_model,
            selected_template=self.store.selected_template,
            history_limit=self.store.history_limit,
            last_sync_time=self.last_sync_time,
        )
        try:
            self.storage.set_item(self.settings_key, json.dumps(settings.to_dict(), ensure_ascii=False))
        except OSError as e:
            logger.warning("Failed to save state to storage: %s", e)

    def load_state_from_storage(self) -> None:
        """Apply the persisted settings. Missing or malformed fields keep their defaults."""
        try:
            raw = self.storage.get_item(self.settings_key)
        except OSError as e:
            logger.warning("Failed to read state from storage: %s", e)
            return
        if not raw:
            return

        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("Ignoring corrupted state record: %s", e)
            return

        settings = PersistedSettings.from_dict(data)
        self.store.set_selected_model(settings.selected_model)
        if settings.selected_template is not None:
            self.store.set_selected_template(settings.selected_template)
        self.store.set_history_limit(settings.history_limit)
        self.last_sync_time = settings.last_sync_time

    def _on_settings_changed(self, _field) -> None:
        if self.is_initialized:
            self.save_state_to_storage()

    def start_autosave(self) -> None:
        if self._autosave_task is None or self._autosave_task.done():
            self._autosave_task = asyncio.get_running_loop().create_task(self._autosave_loop())

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            if self.is_initialized:
                self.save_state_to_storage()

    async def aclose(self) -> None:
        """Stop autosaving and write the settings one last time."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._autosave_task
            self._autosave_task = None
        if self.is_initialized:
            self.save_state_to_storage()
        self._unsubscribe()

    # ── Loading ──────────────────────────────────────────────────────

    @single_flight("initialize")
    async def initialize(self) -> None:
        """Restore settings and load the conversation and template lists, once per lifetime."""
        if self.is_initialized:
            return

        self.load_state_from_storage()

        results = await asyncio.gather(
            self.store.load_conversations(),
            self.store.load_templates(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Initial load failed: %r", result)

        self.is_initialized = True
        self.last_sync_time = _now_ms()
        self.save_state_to_storage()
        self.start_autosave()
        logger.info(
            "Initialized with %d conversations and %d templates",
            len(self.store.conversations), len(self.store.templates),
        )

    async def sync_conversation_state(self) -> None:
        await self.store.load_conversations()

    async def sync_message_state(self, conversation_id: int) -> None:
        await self.store.load_messages(conversation_id)

    @single_flight("batch_delete_conversations")
    async def batch_delete_conversations(self, conversation_ids: list[int]) -> None:
        if not conversation_ids:
            return

        results = await asyncio.gather(
            *(self.store.api.delete_conversation(cid) for cid in conversation_ids),
            return_exceptions=True,
        )
        failed = []
        for cid, result in zip(conversation_ids, results):
            if isinstance(result, ChatSyncError):
                logger.error("Failed to delete conversation %s: %s", cid, result)
                failed.append(cid)
            elif isinstance(result, BaseException):
                raise result

        deleted = [cid for cid in conversation_ids if cid not in failed]
        if self.store.current_conversation_id in deleted:
            self.store.create_new_conversation()

        await self.sync_conversation_state()

        if failed:
            self.store.report_error(f"Failed to delete {len(failed)} of {len(conversation_ids)} conversations")
        else:
            self.store.bus.success(f"Deleted {len(conversation_ids)} conversations")

    async def invalidate_cache(self, kind: str) -> None:
        """Reload exactly the list named by ``kind``: conversations, messages or templates."""
        if kind not in CACHE_TYPES:
            raise ValueError(f"Unknown cache type: {kind!r}")
        logger.debug("Cache invalidated: %s", kind)

        if kind == "conversations":
            await self.store.load_conversations()
        elif kind == "messages":
            cid = self.store.current_conversation_id
            if cid and cid > 0:
                await self.store.load_messages(cid)
        else:
            await self.store.load_templates()

    @single_flight("refresh_all")
    async def refresh_data(self) -> None:
        self.store.clear_error()
        await asyncio.gather(self.store.load_conversations(), self.store.load_templates())

        cid = self.store.current_conversation_id
        if cid and cid > 0:
            await self.store.load_messages(cid)

        self.last_sync_time = _now_ms()
        self.save_state_to_storage()

        if self.store.error:
            self.store.bus.error("Data refresh failed")
        else:
            self.store.bus.success("Data refreshed")

    # ── Recovery ─────────────────────────────────────────────────────

    async def recover_from_error(self) -> None:
        """Abandon all in-flight bookkeeping and initialize again from scratch."""
        stuck = self.pending.snapshot()
        if stuck:
            logger.warning("Recovering: dropping pending operations %s", stuck)
        self.pending.clear()
        self.store.clear_error()
        self.is_initialized = False

        await self.initialize()

        if self.store.error:
            self.store.bus.error("Recovery failed, please restart")
        else:
            self.store.bus.success("Recovered from error")
