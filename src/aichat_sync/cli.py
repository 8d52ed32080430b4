"""CLI entry point for aichat-sync."""

import asyncio
import logging
from typing import Optional

import click
import uvicorn

from .api import AgentApi
from .bus import NOTIFICATION, EventBus
from .config import get_api_base_url, get_state_path
from .dataflow import DataFlowCoordinator
from .errors import ChatSyncError
from .export import conversation_to_json, conversation_to_markdown
from .storage import JsonFileStorage
from .store import ConversationStore
from .stream import StreamProtocolClient


def _build(api_url: str) -> tuple[AgentApi, DataFlowCoordinator]:
    bus = EventBus()

    def echo_notification(note):
        if note.level == "error":
            click.echo(click.style(note.text, fg="red"), err=True)

    bus.subscribe(NOTIFICATION, echo_notification)
    api = AgentApi(api_url)
    store = ConversationStore(api, StreamProtocolClient(api_url), bus=bus)
    return api, DataFlowCoordinator(store, JsonFileStorage(get_state_path()))


@click.group()
@click.option("--api-url", default=get_api_base_url, show_default="$AICHAT_SYNC_API_URL", help="Agent API base URL.")
@click.option("--log-level", default="WARNING", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
@click.pass_context
def main(ctx: click.Context, api_url: str, log_level: str):
    """Synchronize AI chat conversations with an agent backend."""
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"api_url": api_url}


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the in-memory development backend."""
    click.echo(f"Starting aichat-sync dev backend on http://{host}:{port}/api/agent")
    uvicorn.run("aichat_sync.server:app", host=host, port=port, reload=False)


@main.command()
@click.argument("message")
@click.option("--conversation-id", type=int, default=None, help="Continue an existing conversation.")
@click.option("--model", default=None, help="Model to use (persisted for later runs).")
@click.pass_context
def chat(ctx: click.Context, message: str, conversation_id: Optional[int], model: Optional[str]):
    """Send MESSAGE and print the streamed reply."""

    async def run() -> int:
        api, flow = _build(ctx.obj["api_url"])
        store = flow.store
        try:
            await flow.initialize()
            if model:
                store.set_selected_model(model)
            if conversation_id is not None:
                store.current_conversation_id = conversation_id
                await store.load_messages(conversation_id)

            await store.send_message(message)
            if store.error:
                return 1

            reply = next((m for m in reversed(store.messages) if m.role == "assistant"), None)
            if reply is not None:
                click.echo(reply.content)
            click.echo(click.style(f"[conversation {store.current_conversation_id}]", dim=True))
            return 0
        finally:
            await flow.aclose()
            await api.aclose()

    ctx.exit(asyncio.run(run()))


@main.command()
@click.option("--keyword", default="", help="Filter titles by keyword.")
@click.option("--folder", default=None, help="Folder id (default: unfiled conversations).")
@click.pass_context
def conversations(ctx: click.Context, keyword: str, folder: Optional[str]):
    """List conversations."""

    async def run() -> int:
        api, flow = _build(ctx.obj["api_url"])
        store = flow.store
        try:
            store.search_keyword = keyword
            store.selected_folder_id = folder
            await store.load_conversations()
            for conv in store.conversations:
                click.echo(f"{conv.id:>6}  {conv.title}")
            return 1 if store.error else 0
        finally:
            await api.aclose()

    ctx.exit(asyncio.run(run()))


@main.command()
@click.argument("conversation_id", type=int)
@click.option("--format", "fmt", default="md", type=click.Choice(["md", "json"]), help="Export format.")
@click.pass_context
def export(ctx: click.Context, conversation_id: int, fmt: str):
    """Export a conversation as Markdown or JSON."""

    async def run() -> int:
        api, flow = _build(ctx.obj["api_url"])
        store = flow.store
        try:
            try:
                # No folder filter, so filed conversations are found too
                listing = await api.list_conversations()
            except ChatSyncError as e:
                click.echo(f"Failed to load conversations: {e}", err=True)
                return 1
            conv = next((c for c in listing if c.id == conversation_id), None)
            if conv is None:
                click.echo(f"Conversation {conversation_id} not found", err=True)
                return 1

            await store.select_conversation(conv)
            if store.error:
                return 1
            render = conversation_to_json if fmt == "json" else conversation_to_markdown
            click.echo(render(conv, store.messages))
            return 0
        finally:
            await api.aclose()

    ctx.exit(asyncio.run(run()))
