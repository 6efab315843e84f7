"""
Conversation turns and the store that owns them.

A ``Turn`` is one message-shaped unit of the conversation.  Its progress is
tracked by ``CompletionState``, a record of independent flags: an assistant
turn can be fully received while its tool calls are still outstanding, and
its embedding can be scheduled before it has been rendered.

Only ``TurnStore`` creates turns, and only the session's owning task mutates
them.  Everyone else refers to a turn by its ``turn_id``.
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from codeloop.llm.types import Message, ToolCall

if TYPE_CHECKING:
    from codeloop.llm.stream import StreamState

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"


@dataclass
class CompletionState:
    reception_complete: bool = False
    text_rendered: bool = False
    tools_complete: bool = False
    embedding_saved: bool = False
    is_pending_transaction: bool = False

    @property
    def is_complete(self) -> bool:
        return (
            self.reception_complete
            and self.text_rendered
            and self.tools_complete
            and self.embedding_saved
        )


@dataclass
class Turn:
    """
    One conversational unit.

    Attributes
    ----------
    turn_id:
        Stable UUID4 identifier.
    role:
        ``system``, ``user``, ``assistant`` or ``tool``.
    content:
        Canonical text.  For a streamed assistant turn this is recomputed on
        every fragment.
    seq:
        Creation order within the store.
    tool_calls:
        Tool calls introduced by an assistant turn.
    tool_call_id:
        The call a tool-result turn answers.
    stream:
        Present while (and after) an assistant turn is produced.
    content_changed:
        Set whenever ingestion changed the content; cleared by the renderer.
    """

    turn_id: str
    role: str
    content: str = ""
    seq: int = 0
    name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    state: CompletionState = field(default_factory=CompletionState)
    stream: StreamState | None = None
    stream_id: str | None = None
    selected_choice: int = 0
    content_changed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tool_call_ids(self) -> list[str]:
        if self.role == ROLE_TOOL and self.tool_call_id:
            return [self.tool_call_id]
        return [tc.id for tc in self.tool_calls]

    def to_message(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            name=self.name,
            tool_calls=list(self.tool_calls) or None,
            tool_call_id=self.tool_call_id,
        )

    def to_record(self) -> dict:
        """Plain-dict form used for persistence and embedding payloads."""
        return {
            "turn_id": self.turn_id,
            "role": self.role,
            "content": self.content,
            "seq": self.seq,
            "name": self.name,
            "tool_calls": [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ],
            "tool_call_id": self.tool_call_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict) -> Turn:
        """Rebuild a finished, non-pending turn from ``to_record`` output."""
        turn = cls(
            turn_id=record["turn_id"],
            role=record["role"],
            content=record.get("content") or "",
            seq=int(record.get("seq", 0)),
            name=record.get("name"),
            tool_calls=[ToolCall(**tc) for tc in record.get("tool_calls") or []],
            tool_call_id=record.get("tool_call_id"),
        )
        created = record.get("created_at")
        if isinstance(created, str):
            turn.created_at = datetime.fromisoformat(created)
        turn.state = CompletionState(
            reception_complete=True,
            text_rendered=True,
            tools_complete=True,
            embedding_saved=True,
        )
        return turn


class TurnStore:
    """Ordered collection of the turns of one session."""

    def __init__(self) -> None:
        self._turns: dict[str, Turn] = {}
        self._seq = itertools.count()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _add(self, role: str, **kwargs) -> Turn:
        turn = Turn(
            turn_id=str(uuid.uuid4()),
            role=role,
            seq=next(self._seq),
            **kwargs,
        )
        self._turns[turn.turn_id] = turn
        return turn

    def add_system(self, content: str) -> Turn:
        """Add the fixed system-prompt turn, replacing any previous one."""
        for old in [t for t in self._turns.values() if t.role == ROLE_SYSTEM]:
            del self._turns[old.turn_id]
        return self._add(
            ROLE_SYSTEM,
            content=content,
            state=CompletionState(reception_complete=True, tools_complete=True),
        )

    def add_user(self, content: str, name: str | None = None) -> Turn:
        return self._add(
            ROLE_USER,
            content=content,
            name=name,
            state=CompletionState(
                reception_complete=True,
                tools_complete=True,
                is_pending_transaction=True,
            ),
        )

    def add_assistant(self, stream_id: str | None) -> Turn:
        return self._add(
            ROLE_ASSISTANT,
            stream_id=stream_id,
            state=CompletionState(is_pending_transaction=True),
        )

    def add_tool_result(self, tool_call_id: str, content: str) -> Turn:
        return self._add(
            ROLE_TOOL,
            content=content,
            tool_call_id=tool_call_id,
            state=CompletionState(
                reception_complete=True,
                tools_complete=True,
                is_pending_transaction=True,
            ),
        )

    def load_history(self, turns: Iterable[Turn]) -> None:
        """Restore persisted turns as already-sent history."""
        for turn in sorted(turns, key=lambda t: t.seq):
            turn.seq = next(self._seq)
            turn.state.is_pending_transaction = False
            self._turns[turn.turn_id] = turn

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, turn_id: str) -> Turn | None:
        return self._turns.get(turn_id)

    def require(self, turn_id: str) -> Turn:
        turn = self.get(turn_id)
        if turn is None:
            raise KeyError(turn_id)
        return turn

    def all(self) -> list[Turn]:
        return sorted(self._turns.values(), key=lambda t: t.seq)

    def system_turn(self) -> Turn | None:
        for turn in self._turns.values():
            if turn.role == ROLE_SYSTEM:
                return turn
        return None

    def pending(self) -> list[Turn]:
        """Turns of the current transaction, in creation order."""
        return [t for t in self.all() if t.state.is_pending_transaction]

    def history(self) -> list[Turn]:
        """Already-sent turns (system turn excluded), in creation order."""
        return [
            t
            for t in self.all()
            if t.role != ROLE_SYSTEM and not t.state.is_pending_transaction
        ]

    def __len__(self) -> int:
        return len(self._turns)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._turns

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_transaction(self) -> None:
        """Move every pending turn into history ahead of fresh input."""
        for turn in self._turns.values():
            turn.state.is_pending_transaction = False

    def mark_rendered(self, turn_id: str) -> None:
        turn = self.require(turn_id)
        turn.content_changed = False
        if turn.state.reception_complete:
            turn.state.text_rendered = True
