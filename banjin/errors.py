from enum import Enum


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_OR_REQUEST_REJECTED = "auth_or_request_rejected"
    TRANSPORT_ERROR = "transport_error"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_CANCELLED = "tool_cancelled"
    TOOL_TIMED_OUT = "tool_timed_out"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    DISCOVERY_FAILED = "discovery_failed"


class ToolNotFoundError(KeyError):
    """Raised by the registry when a tool name resolves to nothing."""

    kind = FailureKind.TOOL_NOT_FOUND

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Tool {self.name} not found."


class ToolNameCollisionError(ValueError):
    pass


class InvalidToolArgumentsError(ValueError):
    kind = FailureKind.TOOL_EXECUTION_FAILED
