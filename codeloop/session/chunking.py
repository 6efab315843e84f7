"""Split oversized user input into turns that each fit a token budget."""

from __future__ import annotations

import re

from codeloop.llm.token_counter import TokenCounter

# A word together with the whitespace that follows it, so that joining the
# pieces reproduces the input exactly.
_WORD_RE = re.compile(r"\S+\s*|\s+")


class InputChunker:
    """
    Parameters
    ----------
    counter:
        Token counter used to measure pieces.
    token_limit:
        Maximum tokens per chunk.
    """

    def __init__(self, counter: TokenCounter, token_limit: int = 4096) -> None:
        if token_limit < 1:
            raise ValueError("token_limit must be positive")
        self.counter = counter
        self.token_limit = token_limit

    def chunk(self, text: str) -> list[str]:
        """
        Return *text* split at word boundaries into chunks within the limit.

        Order is preserved and ``"".join(chunks) == text``.  A single word
        longer than the limit is split by characters.
        """
        if self.counter.count_text(text) <= self.token_limit:
            return [text]

        chunks: list[str] = []
        current = ""
        for piece in _WORD_RE.findall(text):
            candidate = current + piece
            if self.counter.count_text(candidate) <= self.token_limit:
                current = candidate
                continue
            if current:
                chunks.append(current)
                current = ""
            if self.counter.count_text(piece) <= self.token_limit:
                current = piece
            else:
                pieces = self._split_long(piece)
                chunks.extend(pieces[:-1])
                current = pieces[-1]
        if current:
            chunks.append(current)
        return chunks

    def _split_long(self, piece: str) -> list[str]:
        parts: list[str] = []
        current = ""
        for ch in piece:
            if current and self.counter.count_text(current + ch) > self.token_limit:
                parts.append(current)
                current = ""
            current += ch
        parts.append(current)
        return parts
