"""Tests for the command line interface, run against the dev backend."""

import json

import httpx
import pytest
from click.testing import CliRunner
from httpx import ASGITransport

import aichat_sync.cli as cli
import aichat_sync.server as srv
from aichat_sync.api import AgentApi
from aichat_sync.stream import StreamProtocolClient

from .conftest import BASE_URL


def _dev_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=srv.app), base_url="http://test")


@pytest.fixture
def state_path(tmp_path, monkeypatch):
    path = tmp_path / "state.json"
    monkeypatch.setenv("AICHAT_SYNC_STATE_PATH", str(path))
    monkeypatch.setattr(cli, "AgentApi", lambda url: AgentApi(url, client=_dev_client()))
    monkeypatch.setattr(
        cli, "StreamProtocolClient", lambda url: StreamProtocolClient(url, client=_dev_client(), idle_timeout=None)
    )
    return path


def run(*args):
    return CliRunner().invoke(cli.main, ["--api-url", BASE_URL, *args])


def test_chat_prints_reply(state_path):
    result = run("chat", "hello")
    assert result.exit_code == 0, result.output
    assert "You said: hello" in result.output
    assert "[conversation 1]" in result.output


def test_chat_continues_conversation(state_path):
    run("chat", "hello")
    result = run("chat", "again", "--conversation-id", "1")
    assert result.exit_code == 0, result.output
    assert "[conversation 1]" in result.output
    assert len(srv._get_db().conversation_messages(1)) == 4


def test_chat_persists_model(state_path):
    result = run("chat", "hello", "--model", "m1")
    assert result.exit_code == 0, result.output
    record = json.loads(json.loads(state_path.read_text())["chat_state"])
    assert record["selectedModel"] == "m1"
    assert srv._get_db().conversations[1]["model_name"] == "m1"


def test_chat_reports_stream_error(state_path):
    result = run("chat", "/error insufficient credits")
    assert result.exit_code == 1
    assert "AI service balance is insufficient" in result.output


def test_conversations_lists_titles(state_path):
    run("chat", "hello")
    result = run("conversations")
    assert result.exit_code == 0, result.output
    assert "hello" in result.output

    result = run("conversations", "--keyword", "nothing")
    assert "hello" not in result.output


def test_export_markdown_and_json(state_path):
    run("chat", "hello")

    result = run("export", "1")
    assert result.exit_code == 0, result.output
    assert result.output.startswith("# hello")
    assert "You said: hello" in result.output

    result = run("export", "1", "--format", "json")
    data = json.loads(result.output)
    assert data["conversation"]["id"] == 1
    assert [m["role"] for m in data["messages"]] == ["user", "assistant"]


def test_export_unknown_conversation(state_path):
    result = run("export", "42")
    assert result.exit_code == 1
    assert "Conversation 42 not found" in result.output
