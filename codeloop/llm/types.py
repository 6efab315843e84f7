"""Core types for the LLM subsystem."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from codeloop.errors import ToolArgumentValidation


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "user", "assistant", "system", "tool"
    content: str
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


@dataclass
class ToolCall:
    """
    A tool call as requested by the model.

    *arguments* is kept as the raw JSON text the model produced; it is only
    parsed when the call is dispatched so that a malformed argument string
    fails that one call instead of the whole turn.
    """

    id: str
    name: str
    arguments: str = ""

    def parse_arguments(self) -> dict:
        raw = self.arguments.strip() or "{}"
        try:
            args = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as exc:
            raise ToolArgumentValidation(
                f"Invalid JSON arguments for tool '{self.name}': {exc}"
            ) from exc
        if not isinstance(args, dict):
            raise ToolArgumentValidation(
                f"Arguments for tool '{self.name}' must be a JSON object"
            )
        return args


@dataclass
class ToolCallDelta:
    """
    An incremental piece of a streamed tool call.

    *position* is the tool call's index within its choice; deltas sharing a
    position belong to the same call.
    """

    position: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""


@dataclass
class ChoiceDelta:
    """One choice's share of a streamed fragment."""

    index: int
    content: str = ""
    tool_deltas: list[ToolCallDelta] | None = None
    finish_reason: str | None = None


@dataclass
class StreamFragment:
    """
    A single streamed chunk: ``{id, choices: [{index, delta, finish_reason}]}``.

    *stream_id* identifies the response the fragment belongs to.
    """

    stream_id: str
    choices: list[ChoiceDelta] = field(default_factory=list)


@dataclass
class ResponseChoice:
    index: int
    message: Message
    finish_reason: str | None = None


@dataclass
class FullResponse:
    """A non-streamed completion: ``{id, choices: [{index, message, finish_reason}]}``."""

    id: str
    choices: list[ResponseChoice] = field(default_factory=list)


@dataclass
class CompletionRequest:
    """Everything the completion endpoint needs for one round."""

    model: str
    messages: list[Message]
    stream: bool = True
    max_tokens: int | None = None
    user: str | None = None
    tools: list[dict] | None = None
