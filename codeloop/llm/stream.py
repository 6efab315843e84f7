"""
Reconstruction of assistant turns from completion responses.

A turn's ``StreamState`` is either the one-shot ``FullResponseState`` or a
``FragmentListState`` holding every streamed fragment in arrival order.
Canonical content and tool calls are always recomputed from the stored
fragments for the turn's selected choice, so arrival order *is* logical
order: no reordering or de-duplication is attempted.

A fragmented turn is reception-complete once every choice index that has
appeared so far has reported a finish reason.  The flag never flips back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

from codeloop.errors import StreamIdMismatch
from codeloop.llm.tool_call_assembler import ToolCallAssembler
from codeloop.llm.types import FullResponse, StreamFragment, ToolCall
from codeloop.session.turns import Turn, TurnStore

logger = logging.getLogger(__name__)


@dataclass
class FullResponseState:
    response: FullResponse


@dataclass
class FragmentListState:
    fragments: list[StreamFragment] = field(default_factory=list)

    def seen_indices(self) -> set[int]:
        return {c.index for f in self.fragments for c in f.choices}

    def finished_indices(self) -> set[int]:
        return {
            c.index
            for f in self.fragments
            for c in f.choices
            if c.finish_reason is not None
        }

    def all_seen_finished(self) -> bool:
        seen = self.seen_indices()
        return bool(seen) and seen <= self.finished_indices()


StreamState = Union[FullResponseState, FragmentListState]


def fold_fragments(
    fragments: list[StreamFragment],
    choice_index: int = 0,
    scope: str | None = None,
) -> tuple[str, list[ToolCall]]:
    """
    Concatenate the content and tool-call deltas of one choice.

    *scope* keeps generated tool-call ids stable across refolds.
    """
    parts: list[str] = []
    assembler = ToolCallAssembler(scope)
    for fragment in fragments:
        for choice in fragment.choices:
            if choice.index != choice_index:
                continue
            if choice.content:
                parts.append(choice.content)
            for delta in choice.tool_deltas or ():
                assembler.feed(delta)
    return "".join(parts), assembler.calls()


class StreamReconstructor:
    """
    Folds responses into the assistant turns of a ``TurnStore``.

    Parameters
    ----------
    turns:
        The session's turn store.  The reconstructor mutates turns in place
        and must only be driven by the task that owns the store.
    """

    def __init__(self, turns: TurnStore) -> None:
        self.turns = turns

    def ingest_fragment(self, turn_id: str, fragment: StreamFragment) -> bool:
        """
        Append *fragment* to the turn and recompute its canonical payload.

        Returns ``True`` when this fragment made the turn reception-complete.

        Raises
        ------
        StreamIdMismatch
            If the fragment belongs to another stream.  The turn is untouched.
        ValueError
            If the turn already holds a full (non-streamed) response.
        """
        turn = self.turns.require(turn_id)
        if fragment.stream_id != turn.stream_id:
            raise StreamIdMismatch(turn_id, turn.stream_id, fragment.stream_id)

        if turn.stream is None:
            turn.stream = FragmentListState()
        elif isinstance(turn.stream, FullResponseState):
            raise ValueError(f"Turn {turn_id} already holds a full response")

        turn.stream.fragments.append(fragment)
        content, tool_calls = fold_fragments(
            turn.stream.fragments, turn.selected_choice, scope=turn.turn_id
        )
        if content != turn.content or tool_calls != turn.tool_calls:
            turn.content = content
            turn.tool_calls = tool_calls
            turn.content_changed = True

        return self._update_reception(turn, turn.stream.all_seen_finished())

    def ingest_full_response(self, turn_id: str, response: FullResponse) -> bool:
        """
        Record a one-shot response.

        Returns ``True`` when the turn became reception-complete, i.e. every
        choice carries a finish reason.
        """
        turn = self.turns.require(turn_id)
        turn.stream = FullResponseState(response)

        for choice in response.choices:
            if choice.index == turn.selected_choice:
                turn.content = choice.message.content or ""
                turn.tool_calls = list(choice.message.tool_calls or [])
                break
        turn.content_changed = True

        complete = all(c.finish_reason is not None for c in response.choices)
        return self._update_reception(turn, complete)

    @staticmethod
    def _update_reception(turn: Turn, complete: bool) -> bool:
        if turn.state.reception_complete or not complete:
            return False
        turn.state.reception_complete = True
        logger.debug(
            "Turn %s reception complete (%d tool calls)",
            turn.turn_id,
            len(turn.tool_calls),
        )
        return True
