"""Typed errors for the gateway.

Every failure that leaves the gateway is described by a ``TypedError``: a
closed ``ErrorKind``, whether the kind is retryable, a non-technical message
and a list of recovery hints. Inside the package the same value travels in a
single exception type, ``GatewayError``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed taxonomy of gateway failures."""

    AUTHENTICATION_ERROR = "authentication_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    CIRCUIT_OPEN = "circuit_open"
    VALIDATION_ERROR = "validation_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN_ERROR = "unknown_error"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS

    @property
    def trips_breaker(self) -> bool:
        """Whether a failure of this kind counts against provider health."""
        return self in BREAKER_KINDS


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK_ERROR,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.UNKNOWN_ERROR,
    }
)

BREAKER_KINDS = frozenset(
    {
        ErrorKind.NETWORK_ERROR,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.UNKNOWN_ERROR,
    }
)

# Local reason for rate limiter backpressure; refused at once, never retried
OVERLOADED_REASON = "overloaded"

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTHENTICATION_ERROR: "Invalid or missing YouTube API key. Please check your configuration.",
    ErrorKind.QUOTA_EXCEEDED: "Daily quota limit exceeded. Please try again after the quota resets.",
    ErrorKind.RATE_LIMITED: "Too many requests right now. Please wait a moment before trying again.",
    ErrorKind.NETWORK_ERROR: "Network error occurred. Please check your connection.",
    ErrorKind.NOT_FOUND: "The requested video, channel or playlist could not be found or is private.",
    ErrorKind.FORBIDDEN: "Access to this resource is not allowed.",
    ErrorKind.INVALID_REQUEST: "The request could not be processed.",
    ErrorKind.SERVER_ERROR: "YouTube is experiencing issues. Please try again later.",
    ErrorKind.CIRCUIT_OPEN: "YouTube is temporarily unavailable. Please try again in a few minutes.",
    ErrorKind.VALIDATION_ERROR: "YouTube returned data that could not be read.",
    ErrorKind.TIMEOUT: "The request took too long. Please try again.",
    ErrorKind.CANCELLED: "The request was cancelled.",
    ErrorKind.UNKNOWN_ERROR: "An unexpected error occurred. Please try again.",
}

RECOVERY_HINTS: dict[ErrorKind, tuple[str, ...]] = {
    ErrorKind.AUTHENTICATION_ERROR: (
        "Verify your API key is correct",
        "Check that the YouTube Data API is enabled for the key",
        "Generate a new API key if needed",
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        "Wait for the daily quota reset",
        "Reduce search requests, which cost the most quota",
    ),
    ErrorKind.RATE_LIMITED: ("Try again in a moment",),
    ErrorKind.NETWORK_ERROR: (
        "Check your internet connection",
        "Try again in a moment",
    ),
    ErrorKind.NOT_FOUND: ("Check the video, channel or playlist identifier",),
    ErrorKind.FORBIDDEN: ("Check that the resource is public",),
    ErrorKind.INVALID_REQUEST: ("Fix the request parameters",),
    ErrorKind.SERVER_ERROR: ("Try again later",),
    ErrorKind.CIRCUIT_OPEN: ("Try again in a few minutes",),
    ErrorKind.VALIDATION_ERROR: ("Report the item if the problem persists",),
    ErrorKind.TIMEOUT: ("Try again", "Try a smaller request"),
    ErrorKind.CANCELLED: (),
    ErrorKind.UNKNOWN_ERROR: ("Try again", "Contact support if persistent"),
}


@dataclass(frozen=True)
class TypedError:
    """Classified failure returned to callers.

    Attributes:
        kind: Member of the closed ErrorKind taxonomy
        user_message: Non-technical message suitable for display
        recovery_hints: Ordered suggestions for the user
        http_status: Provider HTTP status, when the failure came from a response
        provider_reason: Provider error reason (e.g. ``quotaExceeded``) or a
            local reason such as ``overloaded``
        detail: Sanitized technical detail for diagnostics
        retry_after: Seconds the provider asked us to wait, if any
    """

    kind: ErrorKind
    user_message: str
    recovery_hints: tuple[str, ...] = ()
    http_status: int | None = None
    provider_reason: str | None = None
    detail: str = ""
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    @classmethod
    def of(cls, kind: ErrorKind, detail: str = "", **kwargs: Any) -> "TypedError":
        """Build an error with the default message and hints for ``kind``."""
        kwargs.setdefault("user_message", USER_MESSAGES[kind])
        kwargs.setdefault("recovery_hints", RECOVERY_HINTS[kind])
        return cls(kind=kind, detail=detail, **kwargs)

    def to_dict(self) -> dict:
        """Convert to the response shape exposed to the application."""
        return {
            "error": self.kind.value,
            "error_code": self.kind.name,
            "message": self.user_message,
            "retryable": self.retryable,
            "http_status": self.http_status,
            "reason": self.provider_reason,
            "recovery_hints": list(self.recovery_hints),
            "retry_after": self.retry_after,
            "detail": self.detail,
        }


class GatewayException(Exception):
    """Base class for gateway exceptions with HTTP status code."""

    status_code: int = 500

    def __init__(self, message: str = "Gateway error"):
        self.message = message
        super().__init__(message)


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.AUTHENTICATION_ERROR: 401,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.SERVER_ERROR: 502,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.VALIDATION_ERROR: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CANCELLED: 499,
    ErrorKind.UNKNOWN_ERROR: 500,
}


class GatewayError(GatewayException):
    """Raised inside the gateway to carry a TypedError."""

    def __init__(self, error: TypedError):
        self.error = error
        self.status_code = STATUS_CODES[error.kind]
        message = f"{error.kind.name}: {error.detail or error.user_message}"
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @classmethod
    def of(cls, kind: ErrorKind, detail: str = "", **kwargs: Any) -> "GatewayError":
        return cls(TypedError.of(kind, detail, **kwargs))
