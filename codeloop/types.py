from dataclasses import dataclass, field


@dataclass
class ToolResult:
    success: bool
    content: str
    error: str | None = None
    error_code: str | None = None
    metadata: dict = field(default_factory=dict)

    def as_turn_content(self) -> str:
        if self.success:
            return self.content
        return f"Error: {self.error or self.content}"


class ErrorCode:
    VALIDATION_ERROR = "validation_error"
    UNKNOWN_TOOL = "unknown_tool"
    DISABLED_TOOL = "disabled_tool"
    TIMEOUT = "timeout"
    TOOL_EXCEPTION = "tool_exception"
    DEFERRED_ERROR = "deferred_error"
