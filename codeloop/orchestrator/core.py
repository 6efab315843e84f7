"""
Session engine -- the single owner of a session's conversation state.

The engine:
1. Takes user input and opens a transaction of user turns
2. Starts a completion round on its own task
3. Folds streamed fragments (or a full response) into the assistant turn
4. Hands every tool call of the finished turn to the dispatcher
5. Starts the next round once all of the turn's tools have resolved
6. Ends the round when the model answers without tool calls

Every network call, tool invocation and embedding job runs on a separate
task and only reports back by posting to the session's ``EventBus``.  The
engine drains the bus serially, so the turn store is never mutated by two
tasks at once.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import uuid
from typing import Any, Callable, Coroutine

from codeloop.config import CodeloopConfig
from codeloop.errors import NetworkError, StreamIdMismatch
from codeloop.llm.providers.base import CompletionClient
from codeloop.llm.stream import StreamReconstructor
from codeloop.llm.token_counter import TokenCounter
from codeloop.orchestrator.assembler import RequestAssembler
from codeloop.orchestrator.dispatcher import Resolution, ToolDispatcher
from codeloop.session.embeddings import Embedder
from codeloop.session.events import (
    EVENT_FRAGMENT_RECEIVED,
    EVENT_REQUEST_FAILED,
    EVENT_RESPONSE_RECEIVED,
    EVENT_SHUTDOWN,
    EVENT_STREAM_FINISHED,
    EVENT_TOOL_RESULT_AVAILABLE,
    EVENT_TOOL_RETURNED,
    EVENT_USER_INPUT,
    STATUS_ERROR,
    EventBus,
    SessionEvent,
    content_changed_event,
    fragment_received_event,
    request_failed_event,
    response_received_event,
    round_complete_event,
    status_event,
    stream_finished_event,
    tool_call_requested_event,
    turn_added_event,
    user_input_event,
)
from codeloop.session.store import SessionStore
from codeloop.session.turns import Turn, TurnStore
from codeloop.tools.registry import ToolRegistry
from codeloop.workspace.query import QueryProcessor

logger = logging.getLogger(__name__)

Listener = Callable[[SessionEvent], None]


class SessionEngine:
    """
    Drives one conversation.

    Parameters
    ----------
    session_id : str
        Identifier of the session (and of its rows in the store).
    config : CodeloopConfig
        Loaded configuration.
    client : CompletionClient
        Completion endpoint.
    registry : ToolRegistry
        Registered tools.
    store : SessionStore
        Optional persistence for turns and embeddings.
    embedder : Embedder
        Optional embedding provider for retrieval.
    processor : QueryProcessor
        Shared code-intelligence processor; the engine subscribes its bus.
    system_prompt : str
        Content of the fixed system turn.
    listener : callable
        Receives outbound events (``turn_added``, ``content_changed``,
        ``tool_call_requested``, ``status``, ``round_complete``).
    """

    def __init__(
        self,
        session_id: str,
        config: CodeloopConfig,
        client: CompletionClient,
        registry: ToolRegistry,
        *,
        store: SessionStore | None = None,
        embedder: Embedder | None = None,
        processor: QueryProcessor | None = None,
        system_prompt: str = "",
        listener: Listener | None = None,
        counter: TokenCounter | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config
        self.client = client
        self.store = store
        self.processor = processor
        self.listener = listener

        self.bus = EventBus()
        self.turns = TurnStore()
        self.reconstructor = StreamReconstructor(self.turns)
        self.dispatcher = ToolDispatcher(
            session_id,
            self.turns,
            registry,
            self.bus,
            workspace_root=config.session.workspace_path,
            disabled=config.tools.disabled,
            timeout=config.tools.timeout_seconds,
            spawn=self._spawn,
        )
        self.assembler = RequestAssembler(
            session_id,
            self.turns,
            registry,
            config,
            store=store,
            embedder=embedder,
            counter=counter,
            spawn=self._spawn,
        )
        if system_prompt:
            self.turns.add_system(system_prompt)
        if processor is not None:
            processor.subscribe(session_id, self.bus)

        self._tasks: set[asyncio.Task] = set()
        self._runner: asyncio.Task | None = None
        self._queued: collections.deque[str] = collections.deque()
        self._unhandled_inputs = 0
        self._idle = asyncio.Event()
        self._idle.set()

        # State of the active round.
        self._active = False
        self._rounds = 0
        self._request_id: str | None = None
        self._assistant_turn_id: str | None = None
        # Assistant turn of this round whose tool results are outstanding.
        self._awaiting_turn_id: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start draining the bus on a background task."""
        if self._runner is None:
            self._runner = asyncio.create_task(self.run())
        return self._runner

    async def run(self) -> None:
        """Process events until shutdown."""
        while True:
            event = await self.bus.get()
            if event.event_type == EVENT_SHUTDOWN:
                break
            try:
                self.handle(event)
            except Exception as exc:
                logger.exception("Failed to handle %s event", event.event_type)
                if self._active:
                    self._fail_round(f"Internal error: {exc}")
        logger.debug("Session %s stopped", self.session_id)

    async def shutdown(self, grace: float = 5.0) -> None:
        """
        Stop the session.

        Producers see the closed bus and stop posting.  Background tasks get
        *grace* seconds to finish; they are not cancelled.
        """
        self.bus.close()
        if self.processor is not None:
            self.processor.unsubscribe(self.session_id)
        if self._runner is not None:
            await self._runner
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=grace)
        self._idle.set()

    async def resume(self) -> int:
        """Load the session's persisted turns as history; return how many."""
        if self.store is None:
            return 0
        turns = await self.store.get_turns(self.session_id)
        self.turns.load_history(turns)
        logger.info("Resumed session %s with %d turns", self.session_id, len(turns))
        return len(turns)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, text: str) -> bool:
        """Queue user input for the engine.  Returns ``False`` after shutdown."""
        if not self.bus.post(user_input_event(text)):
            return False
        self._unhandled_inputs += 1
        self._idle.clear()
        return True

    async def wait_idle(self) -> None:
        """Wait until no round is active and no input is waiting."""
        await self._idle.wait()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._queued)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle(self, event: SessionEvent) -> None:
        """Apply one inbound event."""
        payload = event.payload
        etype = event.event_type

        if etype == EVENT_USER_INPUT:
            self._unhandled_inputs -= 1
            self._on_user_input(payload["content"])
        elif etype == EVENT_FRAGMENT_RECEIVED:
            if self._is_current(payload):
                self._on_fragment(payload["fragment"])
        elif etype == EVENT_RESPONSE_RECEIVED:
            if self._is_current(payload):
                self._on_response(payload["response"])
        elif etype == EVENT_STREAM_FINISHED:
            if self._is_current(payload):
                self._on_stream_finished()
        elif etype == EVENT_REQUEST_FAILED:
            if self._is_current(payload):
                self._fail_round(f"Request failed: {payload['error']}")
        elif etype == EVENT_TOOL_RETURNED:
            self._on_resolution(self.dispatcher.on_tool_returned(payload))
        elif etype == EVENT_TOOL_RESULT_AVAILABLE:
            self._on_resolution(self.dispatcher.on_tool_result_available(payload))
        else:
            logger.debug("Ignoring %s event", etype)

    def _is_current(self, payload: dict) -> bool:
        if payload.get("request_id") != self._request_id or self._request_id is None:
            logger.debug("Discarding event of superseded request %s", payload.get("request_id"))
            return False
        return True

    def _on_user_input(self, content: str) -> None:
        if self._active:
            logger.info("Round in progress, queueing user input")
            self._queued.append(content)
            return
        self._begin(content)

    def _begin(self, content: str) -> None:
        self.turns.begin_transaction()
        self._active = True
        self._rounds = 0
        self._idle.clear()
        for chunk in self.assembler.chunk_input(content):
            turn = self.turns.add_user(chunk, name=self.config.session.user_tag)
            self._publish(turn)
        self._start_round(content)

    def _on_fragment(self, fragment) -> None:
        if self._assistant_turn_id is None:
            turn = self.turns.add_assistant(fragment.stream_id)
            self._assistant_turn_id = turn.turn_id
            self._emit(turn_added_event(turn.turn_id, turn.role))

        try:
            became_complete = self.reconstructor.ingest_fragment(
                self._assistant_turn_id, fragment
            )
        except StreamIdMismatch as exc:
            logger.warning("%s", exc)
            return

        turn = self.turns.require(self._assistant_turn_id)
        self._render(turn, force=became_complete)
        if became_complete:
            self._on_assistant_complete(turn)

    def _on_response(self, response) -> None:
        turn = self.turns.add_assistant(response.id)
        self._assistant_turn_id = turn.turn_id
        self._emit(turn_added_event(turn.turn_id, turn.role))

        became_complete = self.reconstructor.ingest_full_response(turn.turn_id, response)
        self._render(turn, force=True)
        if became_complete:
            self._on_assistant_complete(turn)
        else:
            self._fail_round("Response ended before every choice finished")

    def _on_stream_finished(self) -> None:
        if self._assistant_turn_id is None:
            self._fail_round("Stream ended without a response")
        else:
            self._fail_round("Stream ended before every choice finished")

    def _on_assistant_complete(self, turn: Turn) -> None:
        # Later events of this request (trailing fragments, stream end) are stale.
        self._request_id = None
        self._stored(turn)

        # Dispatch first: it may re-key a call whose id is already taken.
        immediate = self.dispatcher.on_reception_complete(turn.turn_id)
        for call in turn.tool_calls:
            self._emit(tool_call_requested_event(turn.turn_id, call.id, call.name))
        for resolution in immediate:
            self._publish(resolution.result_turn)

        if not turn.tool_calls:
            self._finish_round(turn)
        elif turn.state.tools_complete:
            self._start_round(None)
        else:
            self._awaiting_turn_id = turn.turn_id

    def _on_resolution(self, resolution: Resolution | None) -> None:
        if resolution is None:
            return
        self._publish(resolution.result_turn)
        completed = resolution.completed_turn
        if completed is None:
            return
        if not self._active or completed.turn_id != self._awaiting_turn_id:
            # The round that issued these calls was already aborted.
            logger.info(
                "Tools of turn %s finished outside their round", completed.turn_id
            )
            return
        self._start_round(None)

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def _start_round(self, fresh_input: str | None) -> None:
        limit = self.config.session.max_rounds
        if self._rounds >= limit:
            self._fail_round(f"Reached maximum of {limit} completion rounds")
            return
        self._rounds += 1
        self._request_id = str(uuid.uuid4())
        self._assistant_turn_id = None
        self._awaiting_turn_id = None
        self._spawn(self._request(self._request_id, fresh_input))

    async def _request(self, request_id: str, fresh_input: str | None) -> None:
        try:
            request = await self.assembler.build_request(fresh_input)
            logger.info(
                "Round %d: model=%s messages=%d tools=%d stream=%s",
                self._rounds,
                request.model,
                len(request.messages),
                len(request.tools or ()),
                request.stream,
            )
            if not request.stream:
                response = await self.client.send(request)
                self.bus.post(response_received_event(request_id, response))
                return

            fragments = self.client.send_streaming(request)
            try:
                async for fragment in fragments:
                    if not self.bus.post(fragment_received_event(request_id, fragment)):
                        return
            finally:
                aclose = getattr(fragments, "aclose", None)
                if aclose is not None:
                    await aclose()
            self.bus.post(stream_finished_event(request_id))
        except NetworkError as exc:
            logger.warning("Request %s failed: %s", request_id, exc)
            self.bus.post(request_failed_event(request_id, exc))
        except Exception as exc:
            logger.exception("Request %s raised", request_id)
            self.bus.post(request_failed_event(request_id, exc))

    def _finish_round(self, turn: Turn) -> None:
        self._emit(round_complete_event(turn.turn_id))
        self._round_over()

    def _fail_round(self, message: str) -> None:
        logger.warning("Round aborted: %s", message)
        self._emit(status_event(message, STATUS_ERROR))
        self._round_over()

    def _round_over(self) -> None:
        self._active = False
        self._request_id = None
        self._assistant_turn_id = None
        self._awaiting_turn_id = None
        if self._queued:
            self._begin(self._queued.popleft())
        elif self._unhandled_inputs <= 0:
            self._idle.set()

    # ------------------------------------------------------------------
    # Turn side effects
    # ------------------------------------------------------------------

    def _publish(self, turn: Turn) -> None:
        """Announce a turn created whole (user input, tool result)."""
        self._emit(turn_added_event(turn.turn_id, turn.role))
        self._render(turn, force=True)
        self._stored(turn)

    def _render(self, turn: Turn, force: bool = False) -> None:
        if not (turn.content_changed or force):
            return
        complete = turn.state.reception_complete
        self._emit(content_changed_event(turn.turn_id, turn.content, complete))
        self.turns.mark_rendered(turn.turn_id)

    def _stored(self, turn: Turn) -> None:
        self.assembler.schedule_persist(turn)
        self.assembler.schedule_embedding(turn)

    def _emit(self, event: SessionEvent) -> None:
        if self.listener is None:
            return
        try:
            self.listener(event)
        except Exception:
            logger.exception("Listener failed on %s event", event.event_type)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
