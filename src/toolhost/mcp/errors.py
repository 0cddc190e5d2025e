"""
Error taxonomy and error mapping for the MCP runtime.

This module defines the protocol error kinds, the exceptions handlers and
collaborators raise, and the mapping from a failure to an ErrorObject.
"""

import asyncio
import enum
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, enum.Enum):
    """Protocol-level error kinds."""

    PARSE_ERROR = "ParseError"
    INVALID_REQUEST = "InvalidRequest"
    METHOD_NOT_FOUND = "MethodNotFound"
    INVALID_PARAMS = "InvalidParams"
    INTERNAL = "Internal"
    UNAUTHORIZED = "Unauthorized"
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    UPSTREAM_RATE_LIMITED = "UpstreamRateLimited"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    TIMEOUT = "Timeout"
    NOT_IMPLEMENTED = "NotImplemented"
    CANCELLED = "Cancelled"


# JSON-RPC code and retryable hint per kind
ERROR_CODES: Dict[ErrorKind, int] = {
    ErrorKind.PARSE_ERROR: -32700,
    ErrorKind.INVALID_REQUEST: -32600,
    ErrorKind.METHOD_NOT_FOUND: -32601,
    ErrorKind.INVALID_PARAMS: -32602,
    ErrorKind.INTERNAL: -32603,
    ErrorKind.UNAUTHORIZED: -32001,
    ErrorKind.RESOURCE_NOT_FOUND: -32002,
    ErrorKind.UPSTREAM_RATE_LIMITED: -32003,
    ErrorKind.UPSTREAM_UNAVAILABLE: -32004,
    ErrorKind.TIMEOUT: -32005,
    ErrorKind.NOT_IMPLEMENTED: -32006,
    ErrorKind.CANCELLED: -32800,
}

RETRYABLE_KINDS = frozenset(
    {ErrorKind.UPSTREAM_RATE_LIMITED, ErrorKind.UPSTREAM_UNAVAILABLE, ErrorKind.TIMEOUT}
)


class ErrorObject(BaseModel):
    """Structured error carried by a response envelope."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    retryable: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def code(self) -> int:
        return ERROR_CODES[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-RPC error object."""
        data = {"kind": self.kind.value, "retryable": self.retryable}
        data.update(self.data)
        return {"code": self.code, "message": self.message, "data": data}


def make_error(kind: ErrorKind, message: str, **data: Any) -> ErrorObject:
    """Build an ErrorObject with the default retryable hint for its kind."""
    return ErrorObject(kind=kind, message=message, retryable=kind in RETRYABLE_KINDS, data=data)


class ToolError(Exception):
    """Base class for failures raised by handlers and the runtime."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, **data: Any):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error(self) -> ErrorObject:
        return make_error(self.kind, self.message, **self.data)


class InvalidParamsError(ToolError):
    """Arguments do not satisfy the tool's input schema."""

    kind = ErrorKind.INVALID_PARAMS

    def __init__(self, field: Optional[str], reason: str, **data: Any):
        message = f"Invalid parameter '{field}': {reason}" if field else f"Invalid parameters: {reason}"
        super().__init__(message, field=field, reason=reason, **data)
        self.field = field
        self.reason = reason


class MessageParseError(ToolError):
    """The incoming message is not valid JSON."""

    kind = ErrorKind.PARSE_ERROR


class MethodNotFoundError(ToolError):
    kind = ErrorKind.METHOD_NOT_FOUND


class InvalidRequestError(ToolError):
    kind = ErrorKind.INVALID_REQUEST


class UnauthorizedError(ToolError):
    kind = ErrorKind.UNAUTHORIZED


class ResourceNotFoundError(ToolError):
    kind = ErrorKind.RESOURCE_NOT_FOUND


class UpstreamRateLimitedError(ToolError):
    kind = ErrorKind.UPSTREAM_RATE_LIMITED


class UpstreamUnavailableError(ToolError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ToolTimeoutError(ToolError):
    kind = ErrorKind.TIMEOUT


class NotImplementedToolError(ToolError):
    """Raised for behaviour a collaborator does not support yet."""

    kind = ErrorKind.NOT_IMPLEMENTED


class CancelledToolError(ToolError):
    kind = ErrorKind.CANCELLED


class MissingCredentialError(Exception):
    """A server cannot start because a required credential is absent."""


def upstream_error_for_status(status: int, message: str) -> ToolError:
    """
    Build the exception matching an HTTP status returned by a collaborator.

    Args:
        status: The HTTP status code
        message: Human-readable description of the failure

    Returns:
        The ToolError subclass instance for the status
    """
    if status in (401, 403):
        return UnauthorizedError(message, status=status)
    if status == 404:
        return ResourceNotFoundError(message, status=status)
    if status == 429:
        return UpstreamRateLimitedError(message, status=status)
    if status >= 500:
        return UpstreamUnavailableError(message, status=status)
    return ToolError(message, status=status)


def map_failure(exc: BaseException) -> ErrorObject:
    """
    Map a failure raised during execution to a protocol error.

    Args:
        exc: The exception raised by a handler or collaborator

    Returns:
        The ErrorObject describing the failure
    """
    if isinstance(exc, ToolError):
        return exc.to_error()

    if isinstance(exc, aiohttp.ClientResponseError):
        return upstream_error_for_status(exc.status, f"Upstream returned {exc.status}: {exc.message}").to_error()

    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return make_error(ErrorKind.UPSTREAM_UNAVAILABLE, f"Upstream unavailable: {exc}")

    if isinstance(exc, asyncio.TimeoutError):
        return make_error(ErrorKind.TIMEOUT, "Operation timed out")

    if isinstance(exc, asyncio.CancelledError):
        return make_error(ErrorKind.CANCELLED, "Request was cancelled")

    if isinstance(exc, NotImplementedError):
        return make_error(ErrorKind.NOT_IMPLEMENTED, str(exc) or "Not implemented")

    return make_error(ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}")
