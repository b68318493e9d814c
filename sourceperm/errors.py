"""Source permission exceptions."""

from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Cause categories surfaced to the display layer."""

    NOT_FOUND = "not_found"
    PARSE_ERROR = "parse_error"
    LOAD_ERROR = "load_error"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


class ErrorInfo(BaseModel):
    """A surfaced error: what kind, and a human-readable message."""

    model_config = {"frozen": True}

    kind: ErrorKind
    message: str


class SourcePermError(Exception):
    """Base exception for source permission errors."""

    kind: ErrorKind = ErrorKind.LOAD_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=self.message)


class SourceNotFoundError(SourcePermError):
    """Source slug not present in the workspace."""

    kind = ErrorKind.NOT_FOUND


class PolicyNotFoundError(SourcePermError):
    """No policy file exists for the source."""

    kind = ErrorKind.NOT_FOUND


class PolicyParseError(SourcePermError):
    """Policy record is malformed."""

    kind = ErrorKind.PARSE_ERROR


class PolicyLoadError(SourcePermError):
    """Policy record could not be read."""

    kind = ErrorKind.LOAD_ERROR


class DiscoveryError(SourcePermError):
    """Base exception for capability discovery failures."""

    kind = ErrorKind.CONNECTION_ERROR


class SourceConnectionError(DiscoveryError):
    """Live source could not be reached or refused the request."""

    kind = ErrorKind.CONNECTION_ERROR


class McpProtocolError(SourceConnectionError):
    """MCP server answered with a JSON-RPC error or an unreadable message."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class DiscoveryTimeoutError(DiscoveryError):
    """Discovery exceeded its bounded wait."""

    kind = ErrorKind.TIMEOUT


class DiscoveryUnsupportedError(DiscoveryError):
    """Source type has no live capability list."""

    kind = ErrorKind.UNSUPPORTED


class StaleResultError(SourcePermError):
    """A completion whose request was superseded. Never surfaced."""


__all__ = [
    "ErrorKind",
    "ErrorInfo",
    "SourcePermError",
    "SourceNotFoundError",
    "PolicyNotFoundError",
    "PolicyParseError",
    "PolicyLoadError",
    "DiscoveryError",
    "SourceConnectionError",
    "McpProtocolError",
    "DiscoveryTimeoutError",
    "DiscoveryUnsupportedError",
    "StaleResultError",
]
