"""
Outgoing request assembly.

A request is always ``[system] + context + pending``:

- the system turn, when one exists;
- context drawn from history, only when the round was triggered by fresh
  user input: either the ``retrieval_count`` turns most similar to that
  input (sent in creation order as plain role/content messages) or, when no
  count is configured, the whole history;
- the turns of the current transaction, in creation order.

The assembler also owns the storage side effects: once a turn is fully
received it is persisted and embedded on background tasks, and its
``embedding_saved`` flag is set right away so the turn can complete.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from codeloop.config import CodeloopConfig
from codeloop.errors import EmbeddingPersistFailure
from codeloop.llm.token_counter import TokenCounter
from codeloop.llm.types import CompletionRequest, Message
from codeloop.session.chunking import InputChunker
from codeloop.session.embeddings import Embedder
from codeloop.session.store import SessionStore
from codeloop.session.turns import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    Turn,
    TurnStore,
)
from codeloop.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

Spawn = Callable[[Coroutine[Any, Any, None]], Any]

_RETRIEVABLE_ROLES = (ROLE_USER, ROLE_ASSISTANT)


class RequestAssembler:
    """
    Parameters
    ----------
    session_id:
        Session whose embeddings are searched and written.
    turns:
        The session's turn store.
    registry:
        Registered tools; the enabled ones are advertised with each request.
    config:
        Loaded configuration (model, limits, retrieval settings).
    store:
        Persistence for turns and embeddings.  Without one nothing is
        persisted and nearest-turn retrieval yields no context.
    embedder:
        Embedding provider.  ``None`` disables embeddings.
    counter:
        Token counter for input chunking.
    spawn:
        Schedules background embedding jobs.  Defaults to
        ``asyncio.create_task``.
    """

    def __init__(
        self,
        session_id: str,
        turns: TurnStore,
        registry: ToolRegistry,
        config: CodeloopConfig,
        *,
        store: SessionStore | None = None,
        embedder: Embedder | None = None,
        counter: TokenCounter | None = None,
        spawn: Spawn | None = None,
    ) -> None:
        self.session_id = session_id
        self.turns = turns
        self.registry = registry
        self.config = config
        self.store = store
        self.embedder = embedder if config.embeddings.enabled else None
        self.counter = counter or TokenCounter(config.llm.model)
        self.chunker = InputChunker(self.counter, config.session.chunk_token_limit)
        self._spawn = spawn or self._create_task
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def chunk_input(self, text: str) -> list[str]:
        """Split user input into pieces that each fit the chunk token limit."""
        return self.chunker.chunk(text)

    async def build_request(self, fresh_input: str | None) -> CompletionRequest:
        """
        Build the completion request for the next round.

        Parameters
        ----------
        fresh_input:
            The user text that triggered this round, or ``None`` for a
            continuation round after tool results.  Context is only
            retrieved for fresh input.
        """
        # Snapshot before the first await; the owner keeps mutating the store.
        system = self.turns.system_turn()
        pending = self.turns.pending()
        history = self.turns.history()

        context = await self._context(fresh_input, history, pending)

        messages: list[Message] = []
        if system is not None:
            messages.append(system.to_message())
        messages.extend(context)
        messages.extend(_sendable(pending))

        llm = self.config.llm
        return CompletionRequest(
            model=llm.model,
            messages=messages,
            stream=llm.stream,
            max_tokens=llm.max_output_tokens,
            user=self.config.session.user_tag,
            tools=self.registry.to_openai_schema(self.config.tools.disabled),
        )

    async def _context(
        self, fresh_input: str | None, history: list[Turn], pending: list[Turn]
    ) -> list[Message]:
        settings = self.config.session
        if not fresh_input or not settings.retrieval_augmentation:
            return []
        if settings.retrieval_count is None:
            return _sendable(history)
        if self.store is None or self.embedder is None:
            logger.debug("No embedding store, sending request without context")
            return []

        try:
            vector = await self.embedder.embed(fresh_input)
            hits = await self.store.nearest(
                self.session_id,
                vector,
                settings.retrieval_count,
                roles=_RETRIEVABLE_ROLES,
                exclude={t.turn_id for t in pending},
            )
        except Exception as exc:
            logger.warning("Context retrieval failed, continuing without: %s", exc)
            return []

        hits.sort(key=lambda h: h["seq"])
        return [Message(role=h["role"], content=h["content"]) for h in hits]

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def schedule_embedding(self, turn: Turn) -> None:
        """
        Embed and store a fully received turn in the background.

        ``embedding_saved`` is set immediately; a failed job is logged and
        does not hold the turn back.  System turns are never embedded.
        """
        if turn.role == ROLE_SYSTEM or turn.state.embedding_saved:
            return
        turn.state.embedding_saved = True
        if self.embedder is None or self.store is None:
            return
        self._spawn(self._embed(Turn.from_record(turn.to_record())))

    async def _embed(self, snapshot: Turn) -> None:
        try:
            vector = await self.embedder.embed(_embedding_text(snapshot))
            await self.store.save_embedding(self.session_id, snapshot, vector)
        except Exception as exc:
            failure = EmbeddingPersistFailure(
                f"Embedding for turn {snapshot.turn_id} not saved: {exc}"
            )
            logger.warning("%s", failure)

    def schedule_persist(self, turn: Turn) -> None:
        """Save a received turn in the background so the session can be resumed."""
        if self.store is None:
            return
        self._spawn(self._persist(Turn.from_record(turn.to_record())))

    async def _persist(self, snapshot: Turn) -> None:
        try:
            await self.store.save_turn(self.session_id, snapshot)
        except Exception:
            logger.exception("Could not persist turn %s", snapshot.turn_id)

    def _create_task(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sendable(turns: list[Turn]) -> list[Message]:
    """
    Messages for *turns*, dropping what the API would reject.

    Turns that were never fully received are skipped, and an assistant
    message only keeps the tool calls answered by a tool turn in the list.
    """
    received = [t for t in turns if t.state.reception_complete]
    answered = {t.tool_call_id for t in received if t.role == ROLE_TOOL}
    issued: set[str] = set()
    messages: list[Message] = []
    for turn in received:
        message = turn.to_message()
        if turn.role == ROLE_ASSISTANT and turn.tool_calls:
            calls = [tc for tc in turn.tool_calls if tc.id in answered]
            issued.update(tc.id for tc in calls)
            message.tool_calls = calls or None
        elif turn.role == ROLE_TOOL and turn.tool_call_id not in issued:
            continue
        messages.append(message)
    return messages


def _embedding_text(turn: Turn) -> str:
    text = f"{turn.role}: {turn.content}"
    if turn.tool_calls:
        names = ", ".join(tc.name for tc in turn.tool_calls)
        text += f"\n[tool calls: {names}]"
    return text
