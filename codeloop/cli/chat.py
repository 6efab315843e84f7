"""Interactive chat session handler."""

from __future__ import annotations

import asyncio

from rich.console import Console

from codeloop.cli.output import OutputFormatter
from codeloop.orchestrator.core import SessionEngine
from codeloop.session.events import (
    EVENT_CONTENT_CHANGED,
    EVENT_STATUS,
    EVENT_TOOL_CALL_REQUESTED,
    EVENT_TURN_ADDED,
    SessionEvent,
)
from codeloop.session.turns import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL


class ChatHandler:
    """
    Manages the interactive chat loop.

    Renders the engine's outbound events as they arrive: assistant text is
    printed incrementally, tool calls and their results as one-liners.  The
    handler installs itself as the engine's listener.
    """

    def __init__(
        self,
        engine: SessionEngine,
        console: Console | None = None,
    ) -> None:
        self.engine = engine
        engine.listener = self.on_event
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self._running = True
        self._roles: dict[str, str] = {}
        self._printed: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def on_event(self, event: SessionEvent) -> None:
        """Listener passed to the engine."""
        etype = event.event_type
        payload = event.payload

        if etype == EVENT_TURN_ADDED:
            self._roles[event.turn_id] = payload["role"]
            if payload["role"] == ROLE_ASSISTANT:
                self._printed[event.turn_id] = 0
                self.console.print("[dim]assistant>[/dim] ", end="")

        elif etype == EVENT_CONTENT_CHANGED:
            role = self._roles.get(event.turn_id)
            if role == ROLE_ASSISTANT:
                self._print_delta(event.turn_id, payload["content"], payload["complete"])
            elif role == ROLE_TOOL:
                self.formatter.format_tool_result(payload["content"])

        elif etype == EVENT_TOOL_CALL_REQUESTED:
            self.formatter.format_tool_call(payload["tool_name"], payload["tool_call_id"])

        elif etype == EVENT_STATUS:
            self.formatter.format_status(payload["message"], payload["level"])

    def _print_delta(self, turn_id: str, content: str, complete: bool) -> None:
        printed = self._printed.get(turn_id, 0)
        if len(content) > printed:
            self.console.print(content[printed:], end="", markup=False, highlight=False)
            self._printed[turn_id] = len(content)
        if complete:
            self.console.print()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            turns = [t for t in self.engine.turns.all() if t.role != ROLE_SYSTEM]
            self.formatter.format_turns(turns)
            return True

        if cmd == "/tools":
            tools = self.engine.dispatcher.registry.list()
            self.formatter.format_tool_list(tools, set(self.engine.dispatcher.disabled))
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /history  - Show the turns of this session\n"
                "  /tools    - List available tools\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def handle_input(self, user_input: str) -> None:
        """Submit user input and wait until the engine has answered it."""
        if not self.engine.submit(user_input):
            self.console.print("[red]Session is closed.[/red]")
            self._running = False
            return
        await self.engine.wait_idle()

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]codeloop[/bold] - coding assistant\n"
            "[dim]Type /help for commands, /quit to exit.[/dim]\n"
        )

        loop = asyncio.get_running_loop()
        while self._running:
            try:
                user_input = await loop.run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            await self.handle_input(user_input)
