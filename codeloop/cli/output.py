"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from codeloop.session.events import STATUS_ERROR, STATUS_WARNING
from codeloop.session.turns import Turn
from codeloop.tools.base import Tool

ROLE_COLORS = {
    "system": "dim",
    "user": "blue",
    "assistant": "green",
    "tool": "cyan",
}

STATUS_COLORS = {
    STATUS_WARNING: "yellow",
    STATUS_ERROR: "red",
}


class OutputFormatter:
    """Rich-based output formatting for the codeloop CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[Tool], disabled: set[str] | None = None) -> None:
        disabled = disabled or set()
        table = Table(title="Registered Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("State", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            state = "[red]disabled[/red]" if t.name in disabled else "[green]enabled[/green]"
            table.add_row(t.name, state, t.description)

        self.console.print(table)

    def format_tool_info(self, tool: Tool) -> None:
        self.console.print(Panel(
            f"[bold]{tool.name}[/bold]\n\n{tool.description}",
            title=f"Tool: {tool.name}",
        ))
        schema_json = json.dumps(tool.to_openai_schema()["function"]["parameters"], indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_session_list(self, sessions: list[dict]) -> None:
        if not sessions:
            self.console.print("[dim]No sessions found.[/dim]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Created", no_wrap=True)
        table.add_column("Turns", justify="right")
        table.add_column("Metadata")

        for s in sessions:
            table.add_row(
                s.get("session_id", "?"),
                s.get("created_at", "?"),
                str(s.get("turns", 0)),
                str(s.get("metadata", {})),
            )

        self.console.print(table)

    def format_turns(self, turns: list[Turn], width: int = 100) -> None:
        if not turns:
            self.console.print("[dim]No turns.[/dim]")
            return

        for turn in turns:
            ts = turn.created_at.strftime("%H:%M:%S")
            color = ROLE_COLORS.get(turn.role, "white")
            content = turn.content.replace("\n", " ")[:width]
            if turn.tool_calls:
                names = ", ".join(tc.name for tc in turn.tool_calls)
                content = f"{content} [calls: {names}]".strip()
            elif turn.tool_call_id:
                content = f"({turn.tool_call_id}) {content}"
            self.console.print(f"  [{color}]{ts} {turn.role:>9s}[/{color}]  ", end="")
            self.console.print(content, markup=False)

    def format_tool_call(self, tool_name: str, tool_call_id: str) -> None:
        self.console.print(f"\n  [yellow]-> {tool_name}[/yellow] [dim]{tool_call_id}[/dim]")

    def format_tool_result(self, content: str, limit: int = 200) -> None:
        failed = content.startswith("Error:")
        color = "red" if failed else "cyan"
        shown = content if len(content) <= limit else content[:limit] + "..."
        self.console.print(f"  [{color}]<-[/{color}] ", end="")
        self.console.print(shown, markup=False)

    def format_status(self, message: str, level: str) -> None:
        color = STATUS_COLORS.get(level, "dim")
        self.console.print(f"\n[{color}]{message}[/{color}]")

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))
