"""
Exception hierarchy shared by the orchestration core.

Only GatewayError subclasses abort a turn. Tool failures never raise out of
the dispatcher; they are returned as classified ToolResults instead.
"""


class OrchestrationError(Exception):
    """Base class for errors raised by the orchestration core."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class GatewayError(OrchestrationError):
    """A completion call could not produce a usable result."""


class StructuralError(GatewayError):
    """The completion backend rejected the message sequence as invalid."""


class TransportError(GatewayError):
    """Backend unreachable, timed out or overloaded after all retries."""


class UnexpectedToolCallsError(GatewayError):
    """A call made with tools disabled came back with tool calls."""


class ToolConnectionError(OrchestrationError):
    """A tool connection could not be started or was used before initialize()."""


class ToolInvocationError(OrchestrationError):
    """
    Raised by a tool connection when the tool ran but failed.

    Args:
        message: Human-readable failure detail
        retryable: True if the call could plausibly succeed with corrected arguments
    """

    def __init__(self, message: str, retryable: bool = False, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.retryable = retryable


class AdapterError(OrchestrationError):
    """A caller payload could not be converted to the canonical shape."""
