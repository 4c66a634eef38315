"""
Error taxonomy for the assistant MCP server.

ProtocolError subclasses are answered with JSON-RPC error objects.
ToolError subclasses are caught at the tool boundary and returned in-band as
a CallToolResult with isError=True, so the calling model can read them.
"""

from typing import Optional, Union

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ErrorData,
)

RequestId = Union[str, int]


class AssistantMCPError(Exception):
    """Base class for every error raised by this package."""

    code: int = INTERNAL_ERROR

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=str(self))


# ---------------------------------------------------------------------------
# Protocol-level errors
# ---------------------------------------------------------------------------

class ProtocolError(AssistantMCPError):
    """An error reported to the client as a JSON-RPC error response."""


class DecodeError(ProtocolError):
    """A single inbound frame could not be decoded.

    request_id holds the id recovered from the frame, if any; without one the
    frame cannot be answered and is dropped.
    """

    def __init__(
        self,
        message: str,
        request_id: Optional[RequestId] = None,
        code: int = PARSE_ERROR,
    ):
        super().__init__(message)
        self.request_id = request_id
        self.code = code


class ProtocolStateError(ProtocolError):
    """Method is not valid in the current session state."""

    code = INVALID_REQUEST


class UnknownMethodError(ProtocolError):
    code = METHOD_NOT_FOUND

    def __init__(self, method: str):
        super().__init__(f"Method not found: {method}")
        self.method = method


class InvalidParamsError(ProtocolError):
    code = INVALID_PARAMS


class UnknownToolError(ProtocolError):
    code = INVALID_PARAMS

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found")
        self.tool_name = tool_name


# ---------------------------------------------------------------------------
# Tool-level errors (reported in-band)
# ---------------------------------------------------------------------------

class ToolError(AssistantMCPError):
    """A tool call failed; the failure text goes back as tool content."""


class ArgumentValidationError(ToolError):
    """Tool arguments did not match the tool's input schema."""


class UpstreamError(ToolError):
    """The Pinecone Assistant API call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthError(UpstreamError):
    pass


class NotFoundError(UpstreamError):
    pass


class RateLimitedError(UpstreamError):
    def __init__(
        self,
        message: str,
        status: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status=status)
        self.retry_after = retry_after


class UpstreamUnavailableError(UpstreamError):
    pass


class TransportError(UpstreamError):
    """Network failure or timeout; no HTTP status was received."""


class ProtocolMismatchError(UpstreamError):
    """Upstream answered 2xx with a body we could not interpret."""
