"""
Tool dispatch and correlation.

When an assistant turn is fully received, every tool call it carries gets a
``ToolInvocation`` in an arena keyed by tool-call id.  Calls that fail before
invocation (bad JSON, unknown or disabled tool, schema violation) resolve on
the spot.  The rest are invoked on their own tasks, which report back through
the event bus; a tool that returns ``Deferred`` stays pending until an
out-of-band ``tool_result_available`` event carrying its id arrives.

Every resolution appends exactly one tool-result turn, after which the
invocation leaves the arena.  The requesting turn's ``tools_complete`` flag
turns true once none of its invocations is pending, whatever order they
resolve in.  A call whose id is still held by a pending invocation is
re-keyed, so each call the model issues gets its own result turn.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterable

from codeloop.errors import ToolArgumentValidation, ToolError
from codeloop.llm.tool_call_assembler import fallback_call_id
from codeloop.session.events import (
    EventBus,
    tool_result_available_event,
    tool_returned_event,
)
from codeloop.session.turns import Turn, TurnStore
from codeloop.tools.base import Deferred, Tool, ToolContext
from codeloop.tools.registry import ToolRegistry
from codeloop.tools.validation import ToolValidator
from codeloop.types import ErrorCode, ToolResult

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RESOLVED = "resolved"
STATUS_FAILED = "failed"

# Content of a tool-result turn when a tool finished without output.
DEFAULT_TOOL_OUTPUT = "tool call complete"

Spawn = Callable[[Coroutine[Any, Any, None]], Any]


@dataclass
class ToolInvocation:
    tool_call_id: str
    turn_id: str
    tool_name: str
    arguments: dict = field(default_factory=dict)
    status: str = STATUS_PENDING
    output: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def pending(self) -> bool:
        return self.status == STATUS_PENDING


@dataclass
class Resolution:
    """One invocation leaving the pending state."""

    invocation: ToolInvocation
    result_turn: Turn
    completed_turn: Turn | None = None


class ToolDispatcher:
    """
    Parameters
    ----------
    session_id:
        Session the dispatcher serves; out-of-band results for other
        sessions are ignored.
    turns:
        The session's turn store.
    registry:
        Registered tools.
    bus:
        The session's event bus; invocation tasks report here.
    workspace_root:
        Root against which path arguments are resolved and confined.
    disabled:
        Tool names administratively disabled for this session.
    timeout:
        Max seconds for a single ``Tool.invoke`` call.
    spawn:
        Schedules an invocation coroutine.  Defaults to ``asyncio.create_task``.
    """

    def __init__(
        self,
        session_id: str,
        turns: TurnStore,
        registry: ToolRegistry,
        bus: EventBus,
        *,
        workspace_root: Path,
        disabled: Iterable[str] = (),
        timeout: float = 30.0,
        spawn: Spawn | None = None,
    ) -> None:
        self.session_id = session_id
        self.turns = turns
        self.registry = registry
        self.bus = bus
        self.workspace_root = workspace_root
        self.disabled = frozenset(disabled)
        self.timeout = timeout
        self.invocations: dict[str, ToolInvocation] = {}
        self._spawn = spawn or self._create_task
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def on_reception_complete(self, turn_id: str) -> list[Resolution]:
        """
        Dispatch every tool call of a fully received assistant turn.

        Returns the resolutions that happened immediately (calls that failed
        before invocation).
        """
        turn = self.turns.require(turn_id)
        immediate: list[Resolution] = []

        # Register every invocation before resolving any, so an early failure
        # cannot mark the turn complete while siblings are still to come.
        accepted = []
        for call in turn.tool_calls:
            if call.id in self.invocations:
                # The request and its result are correlated by id, so the
                # call is re-keyed in the turn itself.
                fresh = fallback_call_id()
                logger.warning(
                    "Duplicate tool call id %s in turn %s, re-keyed as %s",
                    call.id,
                    turn_id,
                    fresh,
                )
                call.id = fresh
            inv = ToolInvocation(call.id, turn_id, call.name)
            self.invocations[call.id] = inv
            accepted.append((call, inv))

        for call, inv in accepted:
            try:
                arguments = call.parse_arguments()
                tool = self.registry.lookup(call.name, self.disabled)
                ok, error = ToolValidator.validate(tool, arguments, self.workspace_root)
                if not ok:
                    raise ToolArgumentValidation(error or "Invalid arguments")
            except ToolError as exc:
                logger.info("Tool call %s (%s) rejected: %s", call.id, call.name, exc)
                immediate.append(
                    self._finish(
                        inv,
                        ToolResult(
                            success=False,
                            content=str(exc),
                            error=str(exc),
                            error_code=exc.code,
                        ),
                    )
                )
                continue

            inv.arguments = arguments
            self._spawn(self._run_tool(tool, inv))

        self._refresh(turn_id)
        return immediate

    async def _run_tool(self, tool: Tool, inv: ToolInvocation) -> None:
        ctx = ToolContext(self.session_id, inv.tool_call_id, self.workspace_root)
        try:
            outcome = await asyncio.wait_for(
                tool.invoke(dict(inv.arguments), ctx), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.bus.post(
                tool_result_available_event(
                    self.session_id,
                    inv.tool_call_id,
                    error=f"Tool timed out after {self.timeout}s",
                    error_code=ErrorCode.TIMEOUT,
                )
            )
            return
        except Exception as e:
            logger.exception("Tool %s raised", tool.name)
            self.bus.post(
                tool_result_available_event(
                    self.session_id,
                    inv.tool_call_id,
                    error=f"Tool exception: {e}",
                    error_code=ErrorCode.TOOL_EXCEPTION,
                )
            )
            return

        if isinstance(outcome, Deferred):
            self.bus.post(tool_returned_event(inv.turn_id, inv.tool_call_id, None, True))
        else:
            self.bus.post(
                tool_returned_event(inv.turn_id, inv.tool_call_id, outcome.output, False)
            )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        tool_call_id: str,
        output: str | None = None,
        error: str | None = None,
        error_code: str | None = None,
    ) -> Resolution | None:
        """
        Resolve a pending invocation by id.

        Returns ``None`` for unknown ids, which includes ids already resolved.
        """
        inv = self.invocations.get(tool_call_id)
        if inv is None:
            logger.warning("Result for unknown tool call %s ignored", tool_call_id)
            return None
        if not inv.pending:
            logger.debug("Tool call %s already resolved, ignoring", tool_call_id)
            return None

        if error is not None:
            result = ToolResult(
                success=False,
                content=error,
                error=error,
                error_code=error_code or ErrorCode.DEFERRED_ERROR,
            )
        else:
            result = ToolResult(success=True, content=output or DEFAULT_TOOL_OUTPUT)
        return self._finish(inv, result)

    def on_tool_returned(self, payload: dict) -> Resolution | None:
        """Handle a ``tool_returned`` event payload."""
        if payload.get("deferred"):
            logger.debug("Tool call %s deferred", payload["tool_call_id"])
            return None
        return self.resolve(payload["tool_call_id"], output=payload.get("output"))

    def on_tool_result_available(self, payload: dict) -> Resolution | None:
        """Handle an out-of-band ``tool_result_available`` event payload."""
        if payload.get("session_id") != self.session_id:
            logger.warning(
                "Tool result for session %s delivered to %s, ignoring",
                payload.get("session_id"),
                self.session_id,
            )
            return None
        return self.resolve(
            payload["tool_call_id"],
            output=payload.get("output"),
            error=payload.get("error"),
            error_code=payload.get("error_code"),
        )

    def _finish(self, inv: ToolInvocation, result: ToolResult) -> Resolution:
        inv.status = STATUS_RESOLVED if result.success else STATUS_FAILED
        inv.output = result.content if result.success else None
        inv.error = result.error
        inv.error_code = result.error_code

        result_turn = self.turns.add_tool_result(
            inv.tool_call_id, result.as_turn_content()
        )
        # Folded into its result turn; the id is free again.
        del self.invocations[inv.tool_call_id]
        return Resolution(inv, result_turn, self._refresh(inv.turn_id))

    def _refresh(self, turn_id: str) -> Turn | None:
        """Set ``tools_complete`` once nothing is pending; return the turn if it flipped."""
        turn = self.turns.get(turn_id)
        if turn is None or turn.state.tools_complete:
            return None
        if not turn.state.reception_complete:
            return None
        if self.has_pending(turn_id):
            return None
        turn.state.tools_complete = True
        return turn

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def for_turn(self, turn_id: str) -> list[ToolInvocation]:
        return [inv for inv in self.invocations.values() if inv.turn_id == turn_id]

    def has_pending(self, turn_id: str | None = None) -> bool:
        return any(
            inv.pending
            for inv in self.invocations.values()
            if turn_id is None or inv.turn_id == turn_id
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _create_task(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
