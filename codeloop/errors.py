"""Exception taxonomy shared by the conversation engine and its collaborators."""

from __future__ import annotations


class CodeloopError(Exception):
    """Base error carrying a short machine-readable ``code``."""

    code = "error"

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        if code:
            self.code = code


class StreamIdMismatch(CodeloopError):
    """A fragment was addressed to a turn recorded under another stream."""

    code = "stream_id_mismatch"

    def __init__(self, turn_id: str, expected: str | None, received: str) -> None:
        super().__init__(
            f"Stream id does not match for turn {turn_id}: "
            f"expected {expected!r}, got {received!r}"
        )
        self.turn_id = turn_id
        self.expected = expected
        self.received = received


# ---------------------------------------------------------------------------
# Tool errors -- each resolves exactly one tool call as failed
# ---------------------------------------------------------------------------


class ToolError(CodeloopError):
    code = "tool_error"


class ToolArgumentValidation(ToolError):
    code = "validation_error"


class ToolNotFound(ToolError):
    code = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ToolDisabled(ToolError):
    code = "disabled_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool is disabled for this session: {name}")
        self.name = name


# ---------------------------------------------------------------------------
# Network errors -- each concerns a whole completion round
# ---------------------------------------------------------------------------


class NetworkError(CodeloopError):
    code = "network_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkTransient(NetworkError):
    """Retryable: rate limiting, server errors, dropped connections."""

    code = "network_transient"


class NetworkFatal(NetworkError):
    """Not retryable: the request itself is wrong or the reply is unreadable."""

    code = "network_fatal"


class EmbeddingPersistFailure(CodeloopError):
    """Embedding or persisting a turn's vector failed.  Only ever logged."""

    code = "embedding_persist_failure"
