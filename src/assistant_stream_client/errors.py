from __future__ import annotations

from typing import Any


class AssistantError(Exception):
    """Base exception for the assistant-stream-client package."""


class AssistantTransportError(AssistantError):
    """Raised when the underlying HTTP transport fails or disconnects unexpectedly."""


class AssistantAPIError(AssistantError):
    """Raised when the backend answers a request with an error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        data: Any = None,
    ) -> None:
        """Create an API error.

        Args:
            message: Human-readable description, usually the backend's own text.
            status_code: HTTP status of the failed response.
            code: Optional machine-readable error code from the body.
            data: Optional decoded error body.
        """
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.data = data


class AssistantProtocolError(AssistantError):
    """Raised when the event stream violates the expected protocol."""


class StreamParseError(AssistantProtocolError):
    """Raised when a `data:` line does not carry valid JSON."""

    def __init__(self, message: str, *, line: str) -> None:
        super().__init__(message)
        self.line = line


class StreamFailedError(AssistantProtocolError):
    """Raised when the backend reports a failure inside the stream."""


class StructuredPayloadParseError(AssistantError):
    """Raised when the trailing structured block of a message cannot be parsed."""


class ToolExecutionError(AssistantError):
    """Raised by tool execution capabilities; always captured as tool output."""


class ToolSubmissionError(AssistantError):
    """Raised when tool outputs are rejected again after patching the offending entry."""

    def __init__(self, message: str, *, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class TooManyRoundsError(AssistantError):
    """Raised when a run keeps requiring tool results beyond the configured cap."""

    def __init__(self, message: str, *, rounds: int) -> None:
        super().__init__(message)
        self.rounds = rounds


class OperationCancelled(AssistantError):
    """Cooperative cancellation signal raised by `CancellationToken.throw_if_cancelled`."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)
