"""Tools answered by the code-intelligence query processor."""

from __future__ import annotations

from codeloop.tools import schema
from codeloop.tools.base import Deferred, Tool, ToolContext, ToolOutcome
from codeloop.tools.schema import Param
from codeloop.workspace.query import (
    SYMBOL_KINDS,
    DefinitionQuery,
    QueryProcessor,
    SymbolQuery,
)


class FindSymbolsTool(Tool):
    """
    Look up class, function and method definitions in the workspace.

    The query is forwarded to the shared ``QueryProcessor`` and the tool
    returns ``Deferred``; the answer reaches the session later as a
    ``tool_result_available`` event for this tool call.
    """

    def __init__(self, processor: QueryProcessor) -> None:
        self.processor = processor

    @property
    def name(self) -> str:
        return "find_symbols"

    @property
    def description(self) -> str:
        return (
            "Find Python symbol definitions whose name matches a regular expression. "
            f"Optional kind is one of: {', '.join(SYMBOL_KINDS)}."
        )

    @property
    def parameters(self) -> dict[str, Param]:
        return {
            "name_regex": schema.pattern("Regular expression matched against symbol names"),
            "file_path_regex": schema.pattern(
                "Only search files whose relative path matches", required=False
            ),
            "kind": schema.string("Restrict to one kind of symbol", required=False),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        kind = arguments.get("kind")
        if kind is not None and kind not in SYMBOL_KINDS:
            raise ValueError(f"Unknown symbol kind: {kind}")
        self.processor.submit(
            SymbolQuery(
                session_id=ctx.session_id,
                tool_call_id=ctx.tool_call_id,
                workspace_root=ctx.workspace_root,
                name_regex=arguments["name_regex"],
                file_path_regex=arguments.get("file_path_regex"),
                kind=kind,
            )
        )
        return Deferred()


class GotoDefinitionTool(Tool):
    """Show the source of a symbol's definition; answered like ``find_symbols``."""

    def __init__(self, processor: QueryProcessor) -> None:
        self.processor = processor

    @property
    def name(self) -> str:
        return "goto_definition"

    @property
    def description(self) -> str:
        return (
            "Show where a Python class, function or method is defined, with its source. "
            "Use a bare name ('spin') or qualify it with its enclosing names ('Widget.spin')."
        )

    @property
    def parameters(self) -> dict[str, Param]:
        return {
            "symbol": schema.string("Name of the symbol, optionally dotted"),
            "file_path_regex": schema.pattern(
                "Only search files whose relative path matches", required=False
            ),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        symbol = arguments["symbol"].strip()
        if not symbol:
            raise ValueError("symbol must not be empty")
        self.processor.submit(
            DefinitionQuery(
                session_id=ctx.session_id,
                tool_call_id=ctx.tool_call_id,
                workspace_root=ctx.workspace_root,
                symbol=symbol,
                file_path_regex=arguments.get("file_path_regex"),
            )
        )
        return Deferred()
