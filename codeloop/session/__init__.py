"""Session state: turns, the event bus, persistence, chunking and embeddings."""

from codeloop.session.chunking import InputChunker
from codeloop.session.embeddings import Embedder, HashingEmbedder, OpenAICompatEmbedder
from codeloop.session.events import (
    EVENT_CONTENT_CHANGED,
    EVENT_FRAGMENT_RECEIVED,
    EVENT_REQUEST_FAILED,
    EVENT_RESPONSE_RECEIVED,
    EVENT_ROUND_COMPLETE,
    EVENT_SHUTDOWN,
    EVENT_STATUS,
    EVENT_STREAM_FINISHED,
    EVENT_TOOL_CALL_REQUESTED,
    EVENT_TOOL_RESULT_AVAILABLE,
    EVENT_TOOL_RETURNED,
    EVENT_TURN_ADDED,
    EVENT_USER_INPUT,
    EventBus,
    SessionEvent,
)
from codeloop.session.store import SessionStore
from codeloop.session.turns import CompletionState, Turn, TurnStore

__all__ = [
    "CompletionState",
    "Embedder",
    "EventBus",
    "HashingEmbedder",
    "InputChunker",
    "OpenAICompatEmbedder",
    "SessionEvent",
    "SessionStore",
    "Turn",
    "TurnStore",
    # Event type constants
    "EVENT_CONTENT_CHANGED",
    "EVENT_FRAGMENT_RECEIVED",
    "EVENT_REQUEST_FAILED",
    "EVENT_RESPONSE_RECEIVED",
    "EVENT_ROUND_COMPLETE",
    "EVENT_SHUTDOWN",
    "EVENT_STATUS",
    "EVENT_STREAM_FINISHED",
    "EVENT_TOOL_CALL_REQUESTED",
    "EVENT_TOOL_RESULT_AVAILABLE",
    "EVENT_TOOL_RETURNED",
    "EVENT_TURN_ADDED",
    "EVENT_USER_INPUT",
]
