"""Tests for the typer CLI and the chat renderer."""

from __future__ import annotations

import asyncio
import io
import os

import pytest
import yaml
from rich.console import Console
from typer.testing import CliRunner

from codeloop.cli.app import app
from codeloop.cli.chat import ChatHandler
from codeloop.config import CodeloopConfig
from codeloop.orchestrator.core import SessionEngine
from codeloop.session.events import (
    STATUS_ERROR,
    content_changed_event,
    status_event,
    tool_call_requested_event,
    turn_added_event,
)
from codeloop.tools.registry import ToolRegistry
from tests.mock_providers import MockCompletionClient, text_fragments
from tests.mock_tools import EchoTool

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Run every command from an empty directory with no user config."""
    for key in list(os.environ):
        if key.startswith("CODELOOP_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write_config(tmp_path, data):
    (tmp_path / "codeloop.yaml").write_text(yaml.safe_dump(data))


class TestCommands:

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "codeloop-core v0.1.0" in result.output

    def test_tools_list_shows_builtins(self):
        result = runner.invoke(app, ["tools", "list"])
        assert result.exit_code == 0
        for name in (
            "read_file", "list_directory", "grep", "create_file",
            "replace_lines", "find_symbols", "goto_definition",
        ):
            assert name in result.output

    def test_tools_info(self):
        result = runner.invoke(app, ["tools", "info", "grep"])
        assert result.exit_code == 0
        assert "ignore_case" in result.output

    def test_tools_info_unknown(self):
        result = runner.invoke(app, ["tools", "info", "frobnicate"])
        assert result.exit_code == 1
        assert "Tool not found" in result.output

    def test_config_validate_defaults(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Config is valid." in result.output
        assert "nearest 10" in result.output

    def test_config_validate_rejects_unknown_disabled_tool(self, isolated):
        _write_config(isolated, {"tools": {"disabled": ["ghost"]}})
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1
        assert "not registered: ghost" in result.output

    def test_config_show(self, isolated):
        _write_config(isolated, {"llm": {"model": "local-model"}})
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "local-model" in result.output

    def test_sessions_list_empty(self, isolated):
        _write_config(isolated, {"session": {"history_db": str(isolated / "h.db")}})
        result = runner.invoke(app, ["sessions", "list"])
        assert result.exit_code == 0
        assert "No sessions found." in result.output

    def test_sessions_show_unknown(self, isolated):
        _write_config(isolated, {"session": {"history_db": str(isolated / "h.db")}})
        result = runner.invoke(app, ["sessions", "show", "missing"])
        assert result.exit_code == 1
        assert "Session not found" in result.output


def _engine(tmp_path, items=()):
    cfg = CodeloopConfig()
    cfg.embeddings.enabled = False
    cfg.session.workspace_root = str(tmp_path)
    registry = ToolRegistry()
    registry.register(EchoTool())
    return SessionEngine("chat-session", cfg, MockCompletionClient(list(items)), registry)


class TestChatRendering:

    @pytest.fixture(autouse=True)
    def _workspace(self, tmp_path):
        self.tmp_path = tmp_path

    def _handler(self, items=()):
        buffer = io.StringIO()
        console = Console(file=buffer, width=200, color_system=None)
        return ChatHandler(_engine(self.tmp_path, items), console=console), buffer

    def test_installs_itself_as_listener(self):
        handler, _ = self._handler()
        assert handler.engine.listener == handler.on_event

    def test_assistant_text_printed_incrementally(self):
        handler, buffer = self._handler()
        handler.on_event(turn_added_event("t1", "assistant"))
        handler.on_event(content_changed_event("t1", "Hel", False))
        handler.on_event(content_changed_event("t1", "Hello [b]x[/b]", True))

        out = buffer.getvalue()
        assert "assistant>" in out
        assert "Hello [b]x[/b]" in out
        assert out.count("Hel") == 1

    def test_tool_call_and_result(self):
        handler, buffer = self._handler()
        handler.on_event(tool_call_requested_event("t1", "call_1", "grep"))
        handler.on_event(turn_added_event("t2", "tool"))
        handler.on_event(content_changed_event("t2", "Error: Tool not found: grep", True))

        out = buffer.getvalue()
        assert "-> grep" in out
        assert "call_1" in out
        assert "Error: Tool not found: grep" in out

    def test_status_printed(self):
        handler, buffer = self._handler()
        handler.on_event(status_event("Request failed: HTTP 500", STATUS_ERROR))
        assert "Request failed: HTTP 500" in buffer.getvalue()

    def test_user_turns_not_echoed(self):
        handler, buffer = self._handler()
        handler.on_event(turn_added_event("u1", "user"))
        handler.on_event(content_changed_event("u1", "my question", True))
        assert "my question" not in buffer.getvalue()

    async def test_quit_and_help_commands(self):
        handler, buffer = self._handler()
        assert await handler.handle_command("/help") is True
        assert "/history" in buffer.getvalue()
        assert await handler.handle_command("/nope") is False
        assert await handler.handle_command("/quit") is True
        assert handler._running is False

    async def test_tools_command_lists_registry(self):
        handler, buffer = self._handler()
        assert await handler.handle_command("/tools") is True
        assert "echo" in buffer.getvalue()

    async def test_input_rendered_until_idle(self):
        handler, buffer = self._handler([text_fragments("Hi there")])
        handler.engine.start()
        try:
            await asyncio.wait_for(handler.handle_input("hello"), 5.0)
        finally:
            await handler.engine.shutdown(grace=1.0)

        assert "Hi there" in buffer.getvalue()
        assert await handler.handle_command("/history") is True
        assert "hello" in buffer.getvalue()

    async def test_input_after_shutdown_stops_loop(self):
        handler, buffer = self._handler()
        handler.engine.start()
        await handler.engine.shutdown(grace=1.0)

        await handler.handle_input("hello")

        assert "Session is closed." in buffer.getvalue()
        assert handler._running is False
