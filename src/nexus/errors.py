"""Error taxonomy for nexus.

Every error raised across a module seam derives from NexusError so the CLI
and MCP layers can render a stable code. Decode ambiguity and unresolved
references are degradations, not errors: they are logged and never raised.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    AUTH_EXPIRED = "AUTH_EXPIRED"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    REMOTE_UNAVAILABLE = "REMOTE_UNAVAILABLE"
    REMOTE_ERROR = "REMOTE_ERROR"
    DECODE_FAILED = "DECODE_FAILED"
    OBJECT_NOT_FOUND = "OBJECT_NOT_FOUND"
    SYNC_ABORTED = "SYNC_ABORTED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def format_error_json(code: str | ErrorCode, message: str, details: dict | None = None) -> str:
    """Format an error as JSON for --json-errors output."""
    code_value = code.value if isinstance(code, ErrorCode) else code
    error: dict[str, dict[str, object]] = {"error": {"code": code_value, "message": message}}
    if details:
        error["error"]["details"] = details
    return json.dumps(error)


class NexusError(Exception):
    """Base class for all nexus errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def to_json(self) -> str:
        return format_error_json(self.code, self.message, self.details or None)


class AuthExpiredError(NexusError):
    """The provider rejected the credential even after one refresh."""

    code = ErrorCode.AUTH_EXPIRED


class NotInitializedError(NexusError):
    """Folder structure could not be bootstrapped before a write."""

    code = ErrorCode.NOT_INITIALIZED


class RemoteUnavailableError(NexusError):
    """Network failure, timeout or 5xx from the provider."""

    code = ErrorCode.REMOTE_UNAVAILABLE


class RemoteError(NexusError):
    """Any other non-2xx provider response."""

    code = ErrorCode.REMOTE_ERROR

    def __init__(self, message: str, status_code: int, details: dict[str, Any] | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, {"status": status_code, **(details or {})})


class DocumentDecodeError(NexusError):
    """A fetched body could not be read as text at all."""

    code = ErrorCode.DECODE_FAILED


class ObjectNotFoundError(NexusError):
    code = ErrorCode.OBJECT_NOT_FOUND


class SyncAbortedError(NexusError):
    """Full resync hit the consecutive-error threshold."""

    code = ErrorCode.SYNC_ABORTED


class ValidationFailedError(NexusError):
    """A record failed validation at the store boundary."""

    code = ErrorCode.VALIDATION_FAILED
