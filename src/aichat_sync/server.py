"""FastAPI development backend for aichat-sync.

An in-memory implementation of the agent REST surface and the chat stream
endpoint. Replies are produced by echoing the user's message; no model is
called. Useful for local runs of the CLI and for end-to-end tests.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .config import DEFAULT_HISTORY_LIMIT, DEFAULT_MODEL
from .protocol import DONE_SENTINEL, ChunkEvent, DoneEvent, ErrorEvent, FinalEvent, InitEvent, encode_event

logger = logging.getLogger(__name__)

app = FastAPI(title="aichat-sync dev backend", version="0.1.0")

# Messages starting with this prefix make the stream emit an error event
ERROR_TRIGGER = "/error "


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DevDatabase:
    """Process-local tables for conversations, messages, templates and folders."""

    def __init__(self):
        self.conversations: dict[int, dict] = {}
        self.messages: dict[int, dict] = {}
        self.templates: dict[int, dict] = {}
        self.folders: dict[str, dict] = {}
        self._next_id = {"conversation": 1, "message": 1, "template": 1}

    def next_id(self, table: str) -> int:
        value = self._next_id[table]
        self._next_id[table] = value + 1
        return value

    def create_conversation(self, title: str, model_name: str, system_prompt: Optional[str] = None) -> dict:
        now = _now()
        conv = {
            "id": self.next_id("conversation"),
            "title": title,
            "model_name": model_name,
            "system_prompt": system_prompt or None,
            "tags": [],
            "folder_id": None,
            "created_at": now,
            "updated_at": now,
        }
        self.conversations[conv["id"]] = conv
        return conv

    def add_message(self, conversation_id: int, role: str, content: str, tokens_used: Optional[int] = None) -> dict:
        msg = {
            "id": self.next_id("message"),
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "created_at": _now(),
            "tokens_used": tokens_used,
        }
        self.messages[msg["id"]] = msg
        self.conversations[conversation_id]["updated_at"] = msg["created_at"]
        return msg

    def conversation_messages(self, conversation_id: int) -> list[dict]:
        return sorted(
            (m for m in self.messages.values() if m["conversation_id"] == conversation_id),
            key=lambda m: m["id"],
        )


# Database cache (created on first request)
_db: Optional[DevDatabase] = None


def _get_db() -> DevDatabase:
    global _db
    if _db is None:
        _db = DevDatabase()
    return _db


def _ok(**payload) -> dict:
    return {"success": True, **payload}


@app.exception_handler(HTTPException)
async def _envelope_http_error(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


# ── Request bodies ───────────────────────────────────────────────


class ConversationIn(BaseModel):
    title: str = "New conversation"
    model_name: str = DEFAULT_MODEL
    system_prompt: Optional[str] = None


class TemplateIn(BaseModel):
    name: str
    content: str = ""
    description: Optional[str] = None
    is_favorite: bool = False


class TemplatePatch(BaseModel):
    name: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None
    is_favorite: Optional[bool] = None


class FolderIn(BaseModel):
    name: str
    description: Optional[str] = None
    color: Optional[str] = None


class StreamRequest(BaseModel):
    conversationId: Optional[int] = None
    message: str
    model: str = DEFAULT_MODEL
    systemPrompt: str = ""
    historyLimit: int = DEFAULT_HISTORY_LIMIT


# ── Conversations ────────────────────────────────────────────────


@app.get("/api/agent/conversations")
async def list_conversations(
    keyword: Optional[str] = Query(None, description="Search in titles"),
    folderId: Optional[str] = Query(None, description='Folder id, or "null" for unfiled'),
):
    convs = list(_get_db().conversations.values())

    if keyword:
        needle = keyword.lower()
        convs = [c for c in convs if needle in c["title"].lower()]

    if folderId == "null":
        convs = [c for c in convs if c["folder_id"] is None]
    elif folderId:
        convs = [c for c in convs if c["folder_id"] == folderId]

    convs.sort(key=lambda c: c["updated_at"], reverse=True)
    return _ok(data=convs)


@app.post("/api/agent/conversations")
async def create_conversation(body: ConversationIn):
    conv = _get_db().create_conversation(body.title, body.model_name, body.system_prompt)
    return _ok(data=conv)


@app.delete("/api/agent/conversations/{conversation_id}")
async def delete_conversation(conversation_id: int):
    db = _get_db()
    if db.conversations.pop(conversation_id, None) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    for msg in db.conversation_messages(conversation_id):
        del db.messages[msg["id"]]
    return _ok()


@app.delete("/api/agent/conversations/{conversation_id}/folder")
async def remove_conversation_from_folder(conversation_id: int):
    conv = _get_db().conversations.get(conversation_id)
    if conv is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    conv["folder_id"] = None
    return _ok()


# ── Messages ─────────────────────────────────────────────────────


@app.get("/api/agent/messages")
async def list_messages(conversationId: int = Query(..., ge=1)):
    db = _get_db()
    if conversationId not in db.conversations:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return _ok(messages=db.conversation_messages(conversationId))


@app.delete("/api/agent/messages/batch")
async def batch_delete_messages(messageIds: list[int] = Body(..., embed=True)):
    db = _get_db()
    deleted = 0
    for message_id in messageIds:
        if db.messages.pop(message_id, None) is not None:
            deleted += 1
    return _ok(deleted=deleted)


@app.delete("/api/agent/messages/{message_id}")
async def delete_message(message_id: int):
    if _get_db().messages.pop(message_id, None) is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return _ok()


# ── Prompt templates ─────────────────────────────────────────────


@app.get("/api/agent/prompts")
async def list_templates():
    return _ok(data=sorted(_get_db().templates.values(), key=lambda t: t["id"]))


@app.post("/api/agent/prompts")
async def create_template(body: TemplateIn):
    db = _get_db()
    now = _now()
    template = {"id": db.next_id("template"), **body.model_dump(), "created_at": now, "updated_at": now}
    db.templates[template["id"]] = template
    return _ok(data=template)


@app.patch("/api/agent/prompts/{template_id}")
async def update_template(template_id: int, body: TemplatePatch):
    template = _get_db().templates.get(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Prompt template not found")
    changes = body.model_dump(exclude_none=True)
    if "name" in changes and not changes["name"].strip():
        raise HTTPException(status_code=400, detail="Template name cannot be empty")
    template.update(changes, updated_at=_now())
    return _ok(data=template)


@app.delete("/api/agent/prompts/{template_id}")
async def delete_template(template_id: int):
    if _get_db().templates.pop(template_id, None) is None:
        raise HTTPException(status_code=404, detail="Prompt template not found")
    return _ok()


# ── Folders ──────────────────────────────────────────────────────


@app.get("/api/agent/folders")
async def list_folders():
    return _ok(data=list(_get_db().folders.values()))


@app.post("/api/agent/folders")
async def create_folder(body: FolderIn):
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Folder name cannot be empty")
    folder = {
        "id": uuid.uuid4().hex,
        "name": body.name.strip(),
        "color": body.color or "#6366f1",
        "description": body.description,
    }
    _get_db().folders[folder["id"]] = folder
    return _ok(data=folder)


@app.put("/api/agent/folders/{folder_id}")
async def rename_folder(folder_id: str, name: str = Body(..., embed=True)):
    folder = _get_db().folders.get(folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    folder["name"] = name
    return _ok(data=folder)


@app.delete("/api/agent/folders/{folder_id}")
async def delete_folder(folder_id: str):
    db = _get_db()
    if db.folders.pop(folder_id, None) is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    for conv in db.conversations.values():
        if conv["folder_id"] == folder_id:
            conv["folder_id"] = None
    return _ok()


@app.post("/api/agent/folders/{folder_id}/conversations")
async def add_conversations_to_folder(folder_id: str, conversationIds: list[int] = Body(..., embed=True)):
    db = _get_db()
    if folder_id not in db.folders:
        raise HTTPException(status_code=404, detail="Folder not found")
    moved = 0
    for conversation_id in conversationIds:
        conv = db.conversations.get(conversation_id)
        if conv is not None:
            conv["folder_id"] = folder_id
            moved += 1
    return _ok(moved=moved)


# ── Chat stream ──────────────────────────────────────────────────


@app.post("/api/agent/chat/stream")
async def chat_stream(body: StreamRequest):
    """Persist the user message and stream an echoed reply as ``data:`` events."""
    message = body.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    db = _get_db()
    if body.conversationId is None:
        conv = db.create_conversation(message[:30], body.model, body.systemPrompt)
    else:
        conv = db.conversations.get(body.conversationId)
        if conv is None:
            raise HTTPException(status_code=404, detail="Conversation not found")

    user_msg = db.add_message(conv["id"], "user", message)

    async def events():
        yield encode_event(InitEvent(conv["id"], user_msg["id"], user_msg["content"], user_msg["created_at"]))

        if message.startswith(ERROR_TRIGGER):
            yield encode_event(ErrorEvent(message[len(ERROR_TRIGGER):]))
            return

        reply = f"You said: {message}"
        words = reply.split(" ")
        for i, word in enumerate(words):
            await asyncio.sleep(0)
            yield encode_event(ChunkEvent(word if i == 0 else " " + word))
        yield encode_event(DoneEvent())

        assistant = db.add_message(conv["id"], "assistant", reply, tokens_used=len(words))
        yield encode_event(FinalEvent(assistant["id"], reply, assistant["tokens_used"], assistant["created_at"]))
        yield f"data: {DONE_SENTINEL}\n\n".encode("utf-8")

    logger.info("Streaming reply for conversation %s", conv["id"])
    return StreamingResponse(events(), media_type="text/event-stream")
