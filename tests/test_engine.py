"""End-to-end tests for SessionEngine driven by scripted completion clients."""

from __future__ import annotations

import asyncio
import logging

import pytest

from codeloop.config import CodeloopConfig
from codeloop.errors import NetworkTransient
from codeloop.orchestrator.core import SessionEngine
from codeloop.session.events import (
    EVENT_CONTENT_CHANGED,
    EVENT_ROUND_COMPLETE,
    EVENT_STATUS,
    EVENT_TOOL_CALL_REQUESTED,
    EVENT_TURN_ADDED,
    STATUS_ERROR,
    tool_result_available_event,
)
from codeloop.session.store import SessionStore
from codeloop.tools.code_query import FindSymbolsTool
from codeloop.tools.registry import ToolRegistry
from codeloop.workspace.query import QueryProcessor
from tests.mock_providers import (
    MockCompletionClient,
    PartialStream,
    fragment,
    full_text_response,
    full_tool_response,
    text_fragments,
    tool_call_fragments,
)
from tests.mock_tools import DeferredTool, EchoTool


async def until(predicate, timeout=3.0):
    """Poll *predicate* until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def settle(engine, timeout=5.0):
    await asyncio.wait_for(engine.wait_idle(), timeout)


def _config(workspace, **session):
    cfg = CodeloopConfig()
    cfg.embeddings.enabled = False
    cfg.session.workspace_root = str(workspace)
    for key, value in session.items():
        setattr(cfg.session, key, value)
    return cfg


def _registry(*tools):
    registry = ToolRegistry()
    for tool in tools or (EchoTool(), DeferredTool()):
        registry.register(tool)
    return registry


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of(self, event_type):
        return [e for e in self.events if e.event_type == event_type]

    def errors(self):
        return [
            e.payload["message"]
            for e in self.of(EVENT_STATUS)
            if e.payload["level"] == STATUS_ERROR
        ]


@pytest.fixture
async def make_engine(tmp_path):
    engines = []

    def factory(items, *, registry=None, config=None, hold=None, **kwargs):
        client = MockCompletionClient(items, hold=hold)
        recorder = Recorder()
        engine = SessionEngine(
            kwargs.pop("session_id", "session-1"),
            config or _config(tmp_path),
            client,
            registry or _registry(),
            listener=kwargs.pop("listener", recorder),
            **kwargs,
        )
        engine.start()
        engines.append(engine)
        return engine, client, recorder

    yield factory

    for engine in engines:
        await engine.shutdown(grace=1.0)


def _summary(messages):
    return [(m.role, m.content) for m in messages]


class TestPlainConversation:

    async def test_first_and_second_exchange(self, make_engine, tmp_path):
        engine, client, events = make_engine(
            [text_fragments("Hello world"), text_fragments("Again", stream_id="s2")],
            config=_config(tmp_path, retrieval_count=None),
            system_prompt="S",
        )

        engine.submit("hi")
        await settle(engine)

        assert _summary(client.requests[0].messages) == [("system", "S"), ("user", "hi")]
        assistant = engine.turns.all()[-1]
        assert assistant.role == "assistant"
        assert assistant.content == "Hello world"
        assert assistant.stream_id == "stream-1"
        assert len(events.of(EVENT_ROUND_COMPLETE)) == 1

        engine.submit("u2")
        await settle(engine)

        assert _summary(client.requests[1].messages) == [
            ("system", "S"),
            ("user", "hi"),
            ("assistant", "Hello world"),
            ("user", "u2"),
        ]
        assert client.requests[1].user == "codeloop_user"
        assert client.requests[1].messages[-1].name == "codeloop_user"

    async def test_every_turn_ends_complete(self, make_engine):
        engine, _, _ = make_engine([text_fragments("Done here")], system_prompt="S")
        engine.submit("hi")
        await settle(engine)

        for turn in engine.turns.all():
            if turn.role == "system":
                continue
            assert turn.state.is_complete, turn.role

    async def test_content_changes_rendered_in_order(self, make_engine):
        engine, _, events = make_engine([text_fragments("one two three")])
        engine.submit("go")
        await settle(engine)

        assistant = engine.turns.all()[-1]
        changes = [
            e.payload for e in events.of(EVENT_CONTENT_CHANGED) if e.turn_id == assistant.turn_id
        ]
        assert [c["content"] for c in changes] == ["one ", "one two ", "one two three"]
        assert [c["complete"] for c in changes] == [False, False, True]
        assert assistant.state.text_rendered is True

    async def test_turn_added_for_user_and_assistant(self, make_engine):
        engine, _, events = make_engine([text_fragments("ok")])
        engine.submit("go")
        await settle(engine)
        assert [e.payload["role"] for e in events.of(EVENT_TURN_ADDED)] == ["user", "assistant"]

    async def test_non_streaming_mode(self, make_engine, tmp_path):
        cfg = _config(tmp_path)
        cfg.llm.stream = False
        engine, client, events = make_engine(
            [full_tool_response([("c1", "echo", {"message": "X"})]), full_text_response("Fine")],
            config=cfg,
        )
        engine.submit("go")
        await settle(engine)

        assert client.requests[0].stream is False
        roles = [t.role for t in engine.turns.all()]
        assert roles == ["user", "assistant", "tool", "assistant"]
        assert engine.turns.all()[2].content == "X"
        assert engine.turns.all()[-1].content == "Fine"
        assert events.errors() == []

    async def test_long_input_split_into_several_user_turns(self, make_engine, tmp_path):
        cfg = _config(tmp_path, chunk_token_limit=2)
        engine, client, _ = make_engine([text_fragments("ok")], config=cfg)
        text = "x" * 40
        engine.submit(text)
        await settle(engine)

        users = [t for t in engine.turns.all() if t.role == "user"]
        assert len(users) > 1
        assert "".join(t.content for t in users) == text
        assert [m.role for m in client.requests[0].messages] == ["user"] * len(users)


class TestToolRounds:

    async def test_tool_result_starts_next_round(self, make_engine):
        engine, client, events = make_engine(
            [
                tool_call_fragments([("c1", "echo", {"message": "X"})]),
                text_fragments("All done"),
            ]
        )
        engine.submit("use the tool")
        await settle(engine)

        assert client.call_count == 2
        second = client.requests[1].messages
        assert [m.role for m in second] == ["user", "assistant", "tool"]
        assert second[1].tool_calls[0].id == "c1"
        assert second[2].tool_call_id == "c1"
        assert second[2].content == "X"
        assert [e.payload["tool_name"] for e in events.of(EVENT_TOOL_CALL_REQUESTED)] == ["echo"]
        assert engine.turns.all()[-1].content == "All done"

    async def test_sync_and_deferred_tools(self, make_engine):
        """Tool A answers X at once; tool B is deferred and answers Y later."""
        deferred = DeferredTool()
        engine, client, _ = make_engine(
            [
                tool_call_fragments(
                    [("call_a", "echo", {"message": "X"}), ("call_b", "lookup", {"query": "q"})]
                ),
                text_fragments("Both in"),
            ],
            registry=_registry(EchoTool(), deferred),
        )
        engine.submit("go")

        await until(lambda: deferred.contexts and "call_a" not in engine.dispatcher.invocations)
        assistant = [t for t in engine.turns.all() if t.role == "assistant"][0]
        assert assistant.state.tools_complete is False
        assert client.call_count == 1

        async def later():
            await asyncio.sleep(0.5)
            engine.bus.post(tool_result_available_event("session-1", "call_b", output="Y"))

        asyncio.create_task(later())
        await settle(engine)

        assert assistant.state.tools_complete is True
        results = {m.tool_call_id: m.content for m in client.requests[1].messages if m.role == "tool"}
        assert results == {"call_a": "X", "call_b": "Y"}

    async def test_consecutive_tool_rounds_without_call_ids(self, make_engine):
        engine, client, events = make_engine(
            [
                tool_call_fragments([(None, "echo", {"message": "X"})], stream_id="s1"),
                tool_call_fragments([(None, "echo", {"message": "Z"})], stream_id="s2"),
                text_fragments("done", stream_id="s3"),
            ]
        )
        engine.submit("go")
        await settle(engine)

        assert client.call_count == 3
        assert events.errors() == []
        third = client.requests[2].messages
        assert [m.role for m in third] == ["user", "assistant", "tool", "assistant", "tool"]
        first_id = third[1].tool_calls[0].id
        second_id = third[3].tool_calls[0].id
        assert first_id != second_id
        assert (third[2].tool_call_id, third[2].content) == (first_id, "X")
        assert (third[4].tool_call_id, third[4].content) == (second_id, "Z")
        requested = [e.payload["tool_call_id"] for e in events.of(EVENT_TOOL_CALL_REQUESTED)]
        assert requested == [first_id, second_id]
        assert engine.dispatcher.invocations == {}

    async def test_late_result_of_aborted_round_starts_nothing(self, make_engine):
        deferred = DeferredTool()
        engine, client, events = make_engine(
            [
                tool_call_fragments([("d1", "lookup", {"query": "q"})]),
                text_fragments("fresh"),
            ],
            registry=_registry(EchoTool(), deferred),
        )
        engine.submit("go")
        await until(lambda: deferred.contexts)

        engine._fail_round("Internal error: boom")
        engine.bus.post(tool_result_available_event("session-1", "d1", output="late"))
        await until(lambda: any(t.content == "late" for t in engine.turns.all()))
        await asyncio.sleep(0.05)

        assert client.call_count == 1
        assert engine.active is False

        engine.submit("again")
        await settle(engine)
        assert client.call_count == 2
        assert len(events.of(EVENT_ROUND_COMPLETE)) == 1

    async def test_unknown_tool_answered_with_error(self, make_engine):
        engine, client, events = make_engine(
            [
                tool_call_fragments([("c1", "frobnicate", {})]),
                text_fragments("Sorry"),
            ]
        )
        engine.submit("go")
        await settle(engine)

        tool_turn = [t for t in engine.turns.all() if t.role == "tool"][0]
        assert tool_turn.content == "Error: Tool not found: frobnicate"
        assert client.call_count == 2
        assert events.errors() == []

    async def test_round_limit_stops_tool_loop(self, make_engine, tmp_path):
        engine, client, events = make_engine(
            [
                tool_call_fragments([("c1", "echo", {"message": "a"})], stream_id="s1"),
                tool_call_fragments([("c2", "echo", {"message": "b"})], stream_id="s2"),
            ],
            config=_config(tmp_path, max_rounds=2),
        )
        engine.submit("loop")
        await settle(engine)

        assert client.call_count == 2
        assert events.errors() == ["Reached maximum of 2 completion rounds"]
        assert engine.active is False

    async def test_find_symbols_answered_by_processor(self, make_engine, tmp_path):
        (tmp_path / "widgets.py").write_text("class Widget:\n    def spin(self):\n        pass\n")
        processor = QueryProcessor()
        registry = _registry(FindSymbolsTool(processor))
        engine, client, _ = make_engine(
            [
                tool_call_fragments([("c1", "find_symbols", {"name_regex": "^Widget$"})]),
                text_fragments("Found it"),
            ],
            registry=registry,
            processor=processor,
        )
        try:
            engine.submit("where is Widget")
            await settle(engine)
        finally:
            await processor.stop()

        tool_message = client.requests[1].messages[-1]
        assert tool_message.role == "tool"
        assert tool_message.content == "widgets.py:1: class Widget"


class TestFailures:

    async def test_request_failure_reports_one_error(self, make_engine):
        engine, _, events = make_engine([NetworkTransient("HTTP 429", status_code=429)])
        engine.submit("hi")
        await settle(engine)

        assert events.errors() == ["Request failed: HTTP 429"]
        assert engine.active is False

    async def test_failure_mid_stream(self, make_engine):
        engine, _, events = make_engine(
            [PartialStream([fragment("s", content="par")], NetworkTransient("connection reset"))]
        )
        engine.submit("hi")
        await settle(engine)

        assert events.errors() == ["Request failed: connection reset"]
        assistant = engine.turns.all()[-1]
        assert assistant.content == "par"
        assert assistant.state.reception_complete is False

    async def test_stream_ends_without_finish(self, make_engine):
        engine, _, events = make_engine([[fragment("s", content="half")]])
        engine.submit("hi")
        await settle(engine)
        assert events.errors() == ["Stream ended before every choice finished"]

    async def test_empty_stream(self, make_engine):
        engine, _, events = make_engine([[]])
        engine.submit("hi")
        await settle(engine)
        assert events.errors() == ["Stream ended without a response"]

    async def test_mismatched_fragment_ignored(self, make_engine):
        engine, _, events = make_engine(
            [[fragment("s", content="good "), fragment("other", content="bad"), fragment("s", content="end", finish="stop")]]
        )
        engine.submit("hi")
        await settle(engine)

        assert engine.turns.all()[-1].content == "good end"
        assert events.errors() == []

    async def test_session_continues_after_failure(self, make_engine):
        engine, client, events = make_engine(
            [NetworkTransient("HTTP 503", status_code=503), text_fragments("Back")]
        )
        engine.submit("first")
        await settle(engine)
        engine.submit("second")
        await settle(engine)

        assert client.call_count == 2
        assert engine.turns.all()[-1].content == "Back"
        assert len(events.errors()) == 1

    async def test_listener_errors_do_not_stop_the_session(self, make_engine, caplog):
        def broken(event):
            raise RuntimeError("renderer crashed")

        engine, _, _ = make_engine([text_fragments("fine")], listener=broken)
        with caplog.at_level(logging.ERROR):
            engine.submit("hi")
            await settle(engine)

        assert engine.turns.all()[-1].content == "fine"
        assert "Listener failed" in caplog.text


class TestInputQueue:

    async def test_input_during_round_is_queued(self, make_engine, tmp_path):
        hold = asyncio.Event()
        engine, client, _ = make_engine(
            [text_fragments("first answer"), text_fragments("second answer", stream_id="s2")],
            config=_config(tmp_path, retrieval_count=None),
            hold=hold,
        )
        engine.submit("one")
        await until(lambda: engine.active)
        engine.submit("two")
        await until(lambda: engine.queued == 1)
        assert client.call_count <= 1

        hold.set()
        await settle(engine)

        assert _summary(engine.turns.all()) == [
            ("user", "one"),
            ("assistant", "first answer"),
            ("user", "two"),
            ("assistant", "second answer"),
        ]
        assert _summary(client.requests[1].messages) == [
            ("user", "one"),
            ("assistant", "first answer"),
            ("user", "two"),
        ]


class TestLifecycle:

    async def test_submit_after_shutdown_rejected(self, make_engine):
        engine, client, _ = make_engine([])
        await engine.shutdown()
        assert engine.submit("late") is False
        assert client.call_count == 0

    async def test_resume_restores_persisted_turns(self, make_engine, tmp_path):
        store = SessionStore(str(tmp_path / "history.db"))
        await store.init()
        try:
            sid = await store.create_session()
            engine, _, _ = make_engine(
                [text_fragments("Remembered")], store=store, session_id=sid
            )
            engine.submit("keep this")
            await settle(engine)
            await engine.shutdown()

            resumed, client, _ = make_engine(
                [text_fragments("Yes")],
                store=store,
                session_id=sid,
                config=_config(tmp_path, retrieval_count=None),
                system_prompt="S",
            )
            assert await resumed.resume() == 2
            resumed.submit("do you remember")
            await settle(resumed)

            assert _summary(client.requests[0].messages) == [
                ("system", "S"),
                ("user", "keep this"),
                ("assistant", "Remembered"),
                ("user", "do you remember"),
            ]
            await resumed.shutdown()
        finally:
            await store.close()
