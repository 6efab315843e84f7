"""
In-process event protocol.

Every piece of asynchronous work -- a streaming request, a tool invocation,
a code-intelligence query -- reports back by posting a ``SessionEvent`` on
the session's ``EventBus``.  Only the session's owning task consumes the bus
and applies the corresponding state transition, so producers never touch
conversation state directly.

The set of event types is closed: constructing an event with an unknown
type raises ``ValueError``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from codeloop.llm.types import FullResponse, StreamFragment

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

EVENT_USER_INPUT = "user_input"
EVENT_TURN_ADDED = "turn_added"
EVENT_FRAGMENT_RECEIVED = "fragment_received"
EVENT_RESPONSE_RECEIVED = "response_received"
EVENT_STREAM_FINISHED = "stream_finished"
EVENT_REQUEST_FAILED = "request_failed"
EVENT_TOOL_CALL_REQUESTED = "tool_call_requested"
EVENT_TOOL_RETURNED = "tool_returned"
EVENT_TOOL_RESULT_AVAILABLE = "tool_result_available"
EVENT_CONTENT_CHANGED = "content_changed"
EVENT_STATUS = "status"
EVENT_ROUND_COMPLETE = "round_complete"
EVENT_SHUTDOWN = "shutdown"

EVENT_TYPES = frozenset(
    {
        EVENT_USER_INPUT,
        EVENT_TURN_ADDED,
        EVENT_FRAGMENT_RECEIVED,
        EVENT_RESPONSE_RECEIVED,
        EVENT_STREAM_FINISHED,
        EVENT_REQUEST_FAILED,
        EVENT_TOOL_CALL_REQUESTED,
        EVENT_TOOL_RETURNED,
        EVENT_TOOL_RESULT_AVAILABLE,
        EVENT_CONTENT_CHANGED,
        EVENT_STATUS,
        EVENT_ROUND_COMPLETE,
        EVENT_SHUTDOWN,
    }
)

STATUS_INFO = "info"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"


@dataclass
class SessionEvent:
    """
    A single message on the event bus.

    Attributes
    ----------
    event_type:
        One of ``EVENT_TYPES``.
    payload:
        Event-specific data.  May hold live objects (fragments, responses,
        exceptions); events are never persisted.
    event_id:
        Unique identifier for the event (UUID4).
    turn_id:
        The turn the event concerns, when there is one.
    timestamp:
        UTC timestamp of event creation.
    """

    event_type: str
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    turn_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type!r}")


# ---------------------------------------------------------------------------
# Factory helpers -- inbound
# ---------------------------------------------------------------------------


def user_input_event(content: str) -> SessionEvent:
    return SessionEvent(EVENT_USER_INPUT, {"content": content})


def fragment_received_event(request_id: str, fragment: StreamFragment) -> SessionEvent:
    return SessionEvent(
        EVENT_FRAGMENT_RECEIVED,
        {"request_id": request_id, "fragment": fragment},
    )


def response_received_event(request_id: str, response: FullResponse) -> SessionEvent:
    return SessionEvent(
        EVENT_RESPONSE_RECEIVED,
        {"request_id": request_id, "response": response},
    )


def stream_finished_event(request_id: str) -> SessionEvent:
    return SessionEvent(EVENT_STREAM_FINISHED, {"request_id": request_id})


def request_failed_event(request_id: str, error: Exception) -> SessionEvent:
    return SessionEvent(
        EVENT_REQUEST_FAILED,
        {"request_id": request_id, "error": error},
    )


def tool_returned_event(
    turn_id: str,
    tool_call_id: str,
    output: str | None,
    deferred: bool,
) -> SessionEvent:
    """A tool's ``invoke`` finished: ``Done(output)`` or ``Deferred``."""
    return SessionEvent(
        EVENT_TOOL_RETURNED,
        {"tool_call_id": tool_call_id, "output": output, "deferred": deferred},
        turn_id=turn_id,
    )


def tool_result_available_event(
    session_id: str,
    tool_call_id: str,
    output: str | None = None,
    error: str | None = None,
    error_code: str | None = None,
) -> SessionEvent:
    """Out-of-band resolution of a tool call, matched by id only."""
    return SessionEvent(
        EVENT_TOOL_RESULT_AVAILABLE,
        {
            "session_id": session_id,
            "tool_call_id": tool_call_id,
            "output": output,
            "error": error,
            "error_code": error_code,
        },
    )


def shutdown_event() -> SessionEvent:
    return SessionEvent(EVENT_SHUTDOWN, {})


# ---------------------------------------------------------------------------
# Factory helpers -- outbound (engine -> renderer)
# ---------------------------------------------------------------------------


def turn_added_event(turn_id: str, role: str) -> SessionEvent:
    return SessionEvent(EVENT_TURN_ADDED, {"role": role}, turn_id=turn_id)


def content_changed_event(turn_id: str, content: str, complete: bool) -> SessionEvent:
    return SessionEvent(
        EVENT_CONTENT_CHANGED,
        {"content": content, "complete": complete},
        turn_id=turn_id,
    )


def tool_call_requested_event(
    turn_id: str, tool_call_id: str, tool_name: str
) -> SessionEvent:
    return SessionEvent(
        EVENT_TOOL_CALL_REQUESTED,
        {"tool_call_id": tool_call_id, "tool_name": tool_name},
        turn_id=turn_id,
    )


def status_event(message: str, level: str = STATUS_INFO) -> SessionEvent:
    return SessionEvent(EVENT_STATUS, {"message": message, "level": level})


def round_complete_event(turn_id: str) -> SessionEvent:
    return SessionEvent(EVENT_ROUND_COMPLETE, {}, turn_id=turn_id)


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """
    The single inbound channel of a session.

    ``post`` never blocks and may be called from any task.  ``close`` is the
    session's shutdown flag: once set, producers' posts are discarded and
    ``post`` returns ``False`` so long-running producers can stop early.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, event: SessionEvent) -> bool:
        if self._closed:
            logger.debug("Bus closed, dropping %s event", event.event_type)
            return False
        self._queue.put_nowait(event)
        return True

    async def get(self) -> SessionEvent:
        return await self._queue.get()

    def get_nowait(self) -> SessionEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        """Set the shutdown flag and wake the consumer."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(shutdown_event())

    def __len__(self) -> int:
        return self._queue.qsize()
