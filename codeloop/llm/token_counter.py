"""
Token estimation for chunking user input and sizing requests.

``tiktoken`` is an optional extra (``codeloop-core[tokens]``).  When it is
importable the counter uses the model's BPE encoding; otherwise it falls back
to the usual ~4 characters per token estimate.
"""

from __future__ import annotations

import json
from typing import Any

from codeloop.llm.types import Message

_CHARS_PER_TOKEN = 4
_MESSAGE_OVERHEAD = 4


class TokenCounter:
    """
    Parameters
    ----------
    model:
        Model name passed to ``tiktoken.encoding_for_model``.  Unknown models
        use ``cl100k_base``.
    """

    def __init__(self, model: str | None = None) -> None:
        self.model = model
        self._enc: Any = None
        try:
            import tiktoken  # type: ignore[import-untyped]
        except ImportError:
            return
        try:
            self._enc = tiktoken.encoding_for_model(model or "gpt-4")
        except KeyError:
            self._enc = tiktoken.get_encoding("cl100k_base")

    @property
    def exact(self) -> bool:
        """``True`` when counts come from a real tokenizer."""
        return self._enc is not None

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        if self._enc is not None:
            return len(self._enc.encode(text))
        return max(1, len(text) // _CHARS_PER_TOKEN)

    def count_messages(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> int:
        """Estimate a whole request: per-message overhead, content, tool calls, schemas."""
        total = 0
        for msg in messages:
            total += _MESSAGE_OVERHEAD
            total += self.count_text(msg.content or "")
            for tc in msg.tool_calls or ():
                total += self.count_text(tc.name) + self.count_text(tc.arguments)
            if msg.tool_call_id:
                total += self.count_text(msg.tool_call_id)
        if tools:
            total += self.count_text(json.dumps(tools))
        return total
