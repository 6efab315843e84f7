"""LLM subsystem -- wire types, completion clients, and stream reconstruction."""

from codeloop.llm.types import (
    ChoiceDelta,
    CompletionRequest,
    FullResponse,
    Message,
    ResponseChoice,
    StreamFragment,
    ToolCall,
    ToolCallDelta,
)
from codeloop.llm.tool_call_assembler import ToolCallAssembler
from codeloop.llm.token_counter import TokenCounter

__all__ = [
    "ChoiceDelta",
    "CompletionRequest",
    "FullResponse",
    "Message",
    "ResponseChoice",
    "StreamFragment",
    "TokenCounter",
    "ToolCall",
    "ToolCallAssembler",
    "ToolCallDelta",
]
