"""Tests for the code-intelligence query processor."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from codeloop.session.events import EVENT_TOOL_RESULT_AVAILABLE, EventBus
from codeloop.tools.base import Deferred, ToolContext
from codeloop.tools.code_query import FindSymbolsTool, GotoDefinitionTool
from codeloop.workspace.query import (
    DefinitionQuery,
    QueryProcessor,
    SymbolQuery,
    find_definitions,
    find_symbols,
)


SOURCE = '''\
class Parser:
    def parse(self, text):
        def helper():
            pass
        return helper


async def parse_file(path):
    pass
'''


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "parser.py").write_text(SOURCE)
    (tmp_path / "pkg" / "broken.py").write_text("def oops(:\n")
    (tmp_path / ".venv").mkdir()
    (tmp_path / ".venv" / "vendored.py").write_text("def parse():\n    pass\n")
    return tmp_path


def _query(root, name_regex, **kwargs):
    return SymbolQuery("s1", "call-1", root, name_regex, **kwargs)


class TestFindSymbols:

    def test_finds_classes_functions_and_methods(self, workspace):
        found = [str(s) for s in find_symbols(_query(workspace, "^[Pp]arse"))]
        assert found == [
            "pkg/parser.py:1: class Parser",
            "pkg/parser.py:2: method Parser.parse",
            "pkg/parser.py:8: function parse_file",
        ]

    def test_kind_filter(self, workspace):
        found = find_symbols(_query(workspace, "parse", kind="method"))
        assert [s.name for s in found] == ["Parser.parse"]

    def test_nested_function_is_a_function(self, workspace):
        [helper] = find_symbols(_query(workspace, "^helper$"))
        assert helper.kind == "function"
        assert helper.name == "Parser.parse.helper"

    def test_file_path_filter(self, workspace):
        (workspace / "other.py").write_text("class Parser2:\n    pass\n")
        found = find_symbols(_query(workspace, "Parser", file_path_regex=r"^other"))
        assert [s.path for s in found] == ["other.py"]

    def test_missing_root(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_symbols(_query(tmp_path / "nope", "x"))


class TestFindDefinitions:

    def _find(self, root, symbol, **kwargs):
        return find_definitions(DefinitionQuery("s1", "call-1", root, symbol, **kwargs))

    def test_qualified_name_shows_source(self, workspace):
        [found] = self._find(workspace, "Parser.parse")
        assert found.splitlines() == [
            "pkg/parser.py:2-5: method Parser.parse",
            "     2      def parse(self, text):",
            "     3          def helper():",
            "     4              pass",
            "     5          return helper",
        ]

    def test_bare_name_matches_last_component_only(self, workspace):
        found = self._find(workspace, "parse")
        assert [d.splitlines()[0] for d in found] == ["pkg/parser.py:2-5: method Parser.parse"]

    def test_nested_definition(self, workspace):
        [found] = self._find(workspace, "helper")
        assert found.splitlines()[0] == "pkg/parser.py:3-4: function Parser.parse.helper"

    def test_long_definition_is_cut(self, tmp_path):
        body = "".join("    x = 1\n" for _ in range(49))
        (tmp_path / "big.py").write_text("def big():\n" + body)
        [found] = self._find(tmp_path, "big")
        lines = found.splitlines()
        assert lines[0] == "big.py:1-50: function big"
        assert len(lines) == 1 + 40 + 1
        assert lines[-1] == "[10 more lines]"

    def test_run_reports_missing_symbol(self, workspace):
        query = DefinitionQuery("s1", "call-1", workspace, "Nope")
        assert query.run() == "No definition found for: Nope"


class TestQueryProcessor:

    async def test_answer_posted_to_subscribed_bus(self, workspace):
        bus = EventBus()
        processor = QueryProcessor()
        processor.subscribe("s1", bus)
        try:
            processor.submit(_query(workspace, "^Parser$"))
            event = await asyncio.wait_for(bus.get(), 5)
        finally:
            await processor.stop()

        assert event.event_type == EVENT_TOOL_RESULT_AVAILABLE
        assert event.payload["tool_call_id"] == "call-1"
        assert event.payload["session_id"] == "s1"
        assert event.payload["output"] == "pkg/parser.py:1: class Parser"
        assert event.payload["error"] is None

    async def test_no_matches_reported(self, workspace):
        bus = EventBus()
        processor = QueryProcessor()
        processor.subscribe("s1", bus)
        try:
            processor.submit(_query(workspace, "^Nothing$"))
            event = await asyncio.wait_for(bus.get(), 5)
        finally:
            await processor.stop()
        assert event.payload["output"] == "No symbols found matching: ^Nothing$"

    async def test_bad_root_reported_as_error(self, tmp_path):
        bus = EventBus()
        processor = QueryProcessor()
        processor.subscribe("s1", bus)
        try:
            processor.submit(_query(tmp_path / "missing", "x"))
            event = await asyncio.wait_for(bus.get(), 5)
        finally:
            await processor.stop()
        assert event.payload["error"].startswith("Workspace root does not exist")
        assert event.payload["error_code"] == "deferred_error"

    async def test_unsubscribed_session_gets_nothing(self, workspace):
        bus = EventBus()
        processor = QueryProcessor()
        processor.subscribe("s1", bus)
        processor.unsubscribe("s1")
        processor.submit(_query(workspace, "Parser"))
        await asyncio.sleep(0.2)
        await processor.stop()
        assert len(bus) == 0

    async def test_submit_after_stop_rejected(self, workspace):
        processor = QueryProcessor()
        processor.start()
        await processor.stop()
        assert processor.running is False
        with pytest.raises(RuntimeError):
            processor.submit(_query(workspace, "x"))


class TestFindSymbolsTool:

    async def test_invoke_forwards_and_defers(self, workspace):
        bus = EventBus()
        processor = QueryProcessor()
        processor.subscribe("s1", bus)
        tool = FindSymbolsTool(processor)
        try:
            outcome = await tool.invoke(
                {"name_regex": "parse_file"}, ToolContext("s1", "call-9", workspace)
            )
            event = await asyncio.wait_for(bus.get(), 5)
        finally:
            await processor.stop()

        assert isinstance(outcome, Deferred)
        assert event.payload["tool_call_id"] == "call-9"
        assert event.payload["output"] == "pkg/parser.py:8: function parse_file"

    async def test_unknown_kind_raises(self, workspace):
        tool = FindSymbolsTool(QueryProcessor())
        with pytest.raises(ValueError, match="Unknown symbol kind"):
            await tool.invoke(
                {"name_regex": "x", "kind": "module"}, ToolContext("s1", "c", workspace)
            )


class TestGotoDefinitionTool:

    async def test_invoke_forwards_and_defers(self, workspace):
        bus = EventBus()
        processor = QueryProcessor()
        processor.subscribe("s1", bus)
        tool = GotoDefinitionTool(processor)
        try:
            outcome = await tool.invoke(
                {"symbol": "parse_file"}, ToolContext("s1", "call-7", workspace)
            )
            event = await asyncio.wait_for(bus.get(), 5)
        finally:
            await processor.stop()

        assert isinstance(outcome, Deferred)
        assert event.payload["tool_call_id"] == "call-7"
        assert event.payload["output"].splitlines() == [
            "pkg/parser.py:8-9: function parse_file",
            "     8  async def parse_file(path):",
            "     9      pass",
        ]

    async def test_blank_symbol_raises(self, workspace):
        tool = GotoDefinitionTool(QueryProcessor())
        with pytest.raises(ValueError, match="must not be empty"):
            await tool.invoke({"symbol": "  "}, ToolContext("s1", "c", workspace))
