"""Abstract interface for chat-completion endpoints."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from codeloop.llm.types import CompletionRequest, FullResponse, StreamFragment


class CompletionClient(ABC):
    """
    A client encapsulates access to a single completion endpoint.

    Implementations raise ``NetworkTransient`` for failures worth retrying
    and ``NetworkFatal`` for everything else, after applying their own retry
    policy.
    """

    @abstractmethod
    async def send(self, request: CompletionRequest) -> FullResponse:
        """Execute a non-streamed request."""
        ...

    @abstractmethod
    def send_streaming(
        self, request: CompletionRequest
    ) -> AsyncIterator[StreamFragment]:
        """
        Execute a streamed request.

        Returns a finite, non-restartable async iterator of fragments.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable client name (e.g. ``"openai-compat"``)."""
        ...

    async def aclose(self) -> None:
        """Release any pooled connections."""
