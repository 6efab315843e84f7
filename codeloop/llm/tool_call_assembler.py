"""
Assembles streamed tool-call deltas into ordered ToolCall objects.

Deltas are grouped by their position within a choice and concatenated in
arrival order.  Argument text is *not* parsed here: the dispatcher parses it
per call so one malformed call cannot drop its siblings.
"""

from __future__ import annotations

import uuid

from codeloop.llm.types import ToolCall, ToolCallDelta


def fallback_call_id(scope: str | None = None, position: int = 0) -> str:
    """
    Id for a call the server sent without one.

    With a *scope* (e.g. the owning turn's id) the result is stable for that
    scope and position, so refolding the same deltas yields the same id.
    Without one a random id is returned.
    """
    if scope:
        return f"call_{uuid.uuid5(uuid.NAMESPACE_OID, f'{scope}:{position}').hex[:24]}"
    return f"call_{uuid.uuid4().hex[:24]}"


class ToolCallAssembler:
    """
    Buffers tool-call deltas for a single choice.

    *scope* seeds the ids of calls that never receive one from the server.
    """

    def __init__(self, scope: str | None = None) -> None:
        self._buf: dict[int, dict] = {}
        self._scope = scope

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: ToolCallDelta) -> None:
        """Fold one delta into the buffer for its position."""
        buf = self._buf.get(delta.position)
        if buf is None:
            buf = self._buf[delta.position] = {
                "id": None,
                "fallback": fallback_call_id(self._scope, delta.position),
                "name": "",
                "args": "",
            }

        if delta.id and not buf["id"]:
            buf["id"] = delta.id

        if delta.name_delta:
            buf["name"] += delta.name_delta

        if delta.args_delta:
            buf["args"] += delta.args_delta

    def calls(self) -> list[ToolCall]:
        """Return the tool calls accumulated so far, ordered by position."""
        return [
            ToolCall(
                id=buf["id"] or buf["fallback"],
                name=buf["name"].strip(),
                arguments=buf["args"],
            )
            for _, buf in sorted(self._buf.items())
        ]

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._buf.clear()

    def __len__(self) -> int:
        return len(self._buf)
