"""Error taxonomy for the streaming client.

``TransportError`` is retried locally, ``ProtocolError`` and ``CapacityError``
are absorbed into the data model, ``FatalError`` is surfaced to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

ERROR_TURN_TEXT = "I'm having trouble reaching the AI model right now. Please try again."


class StreamError(Exception):
    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class TransportError(StreamError):
    """Network, timeout or connection failure."""


class ProtocolError(StreamError):
    """Malformed frame or mismatched correlation id."""


class CapacityError(StreamError):
    """A buffer or size cap was exceeded."""


class FatalError(StreamError):
    """Non-recoverable failure surfaced to the caller."""


@dataclass(frozen=True)
class ErrorCategory:
    type: str
    message: str
    retryable: bool
    action: Optional[str] = None


_CONNECTIVITY = ErrorCategory("connectivity", "We lost the connection. Retrying...", True, "Retry")
_AUTH = ErrorCategory("auth", "Please sign in again to continue.", False, "Sign In")
_RATE_LIMIT = ErrorCategory(
    "rate_limit", "You've reached your usage limit. Please try again later.", False, "Upgrade"
)
_TIMEOUT = ErrorCategory("timeout", "The request timed out. Please try again.", True, "Retry")
_PERMISSION = ErrorCategory(
    "permission", "You don't have permission to perform this action.", False, "Contact Support"
)
_SERVER = ErrorCategory(
    "server_error", "Our servers are experiencing issues. Please try again later.", True, "Retry"
)
_SYSTEM = ErrorCategory(
    "system", "Something broke on our end. Your message is saved; try again.", True, "Retry"
)

# Only these kinds are retried by the connection driver.
_RETRY_KEYWORDS = ("network", "timeout", "connection")


def _parts(error: Any) -> tuple[str, Any]:
    if isinstance(error, StreamError):
        return error.message.lower(), error.code or error.status
    if isinstance(error, BaseException):
        return str(error).lower(), getattr(error, "code", None) or getattr(error, "status", None)
    if isinstance(error, dict):
        message = str(error.get("message") or "").lower()
        return message, error.get("code") or error.get("status")
    return str(error or "").lower(), None


def classify_error(error: Any) -> ErrorCategory:
    """Map an exception, payload or message onto a user-facing category."""

    message, code = _parts(error)

    if (
        any(word in message for word in ("network", "connection", "stream stalled", "fetch"))
        or (isinstance(error, TransportError) and "timeout" not in message)
        or code in ("NETWORK_ERROR", "CONNECTION_LOST")
    ):
        return _CONNECTIVITY
    if (
        any(word in message for word in ("unauthorized", "authentication", "token", "sign in", "no authenticated user"))
        or code in (401, "UNAUTHORIZED")
    ):
        return _AUTH
    if (
        any(word in message for word in ("rate limit", "usage limit", "too many requests", "quota exceeded"))
        or code in (429, "RATE_LIMITED", "QUOTA_EXCEEDED")
    ):
        return _RATE_LIMIT
    if "timeout" in message or "timed out" in message or code in (408, "TIMEOUT", "REQUEST_TIMEOUT"):
        return _TIMEOUT
    if (
        any(word in message for word in ("permission", "forbidden", "access denied"))
        or code in (403, "FORBIDDEN", "ACCESS_DENIED")
    ):
        return _PERMISSION
    if (
        any(word in message for word in ("server error", "service unavailable"))
        or code in (500, 502, 503, 504, "SERVER_ERROR", "SERVICE_UNAVAILABLE")
    ):
        return _SERVER
    if any(word in message for word in ("validation", "invalid", "required")) or code in (400, "VALIDATION_ERROR"):
        return ErrorCategory("validation", _original_message(error), False)
    return _SYSTEM


def is_retryable(error: Any) -> bool:
    """Whether the driver should retry: network, timeout or connection failures only."""

    if isinstance(error, (FatalError, ProtocolError, CapacityError)):
        return False
    message, code = _parts(error)
    if isinstance(error, TransportError):
        return True
    if any(word in message for word in _RETRY_KEYWORDS):
        return True
    return code in ("NETWORK_ERROR", "TIMEOUT", "CONNECTION_LOST")


def user_message(error: Any) -> str:
    return classify_error(error).message


def _original_message(error: Any) -> str:
    if isinstance(error, StreamError):
        return error.message
    if isinstance(error, dict):
        return str(error.get("message") or "Invalid request.")
    return str(error) or "Invalid request."
