"""Classification of raw provider and transport failures.

``classify`` turns whatever an attempt raised into a ``TypedError``. Given the
same failure and the same ``now`` it returns the same result, and the
retryable flag is a property of the kind alone. When ``now`` is omitted an
HTTP-date ``Retry-After`` is measured against the wall clock.
"""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx
from pydantic import ValidationError

from tubegateway.app.core.security import sanitize_message
from tubegateway.app.exceptions import RECOVERY_HINTS, ErrorKind, GatewayError, TypedError

# Provider error reasons, from error.errors[].reason and error.details[].reason
AUTH_REASONS = frozenset(
    {
        "keyInvalid",
        "keyExpired",
        "keyNotFound",
        "API_KEY_INVALID",
        "API_KEY_EXPIRED",
        "authError",
        "unauthorized",
        "ipRefererBlocked",
        "accessNotConfigured",
        "forbiddenByRestriction",
    }
)
QUOTA_REASONS = frozenset({"quotaExceeded", "dailyLimitExceeded", "dailyLimitExceededUnreg"})
RATE_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


def classify(
    raw: BaseException,
    *,
    reset_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TypedError:
    """Map a raised failure onto the closed error taxonomy.

    Args:
        raw: The exception an attempt raised
        reset_time: Next quota reset, used to phrase QUOTA_EXCEEDED hints
        now: Reference time for HTTP-date Retry-After values

    Returns:
        The classified error. ``GatewayError`` instances pass through unchanged.
    """
    if isinstance(raw, GatewayError):
        return raw.error

    if isinstance(raw, asyncio.CancelledError):
        return TypedError.of(ErrorKind.CANCELLED, detail="operation cancelled")

    if isinstance(raw, httpx.HTTPStatusError):
        return classify_response(raw.response, reset_time=reset_time, now=now)

    if isinstance(raw, httpx.TimeoutException):
        return TypedError.of(
            ErrorKind.NETWORK_ERROR,
            detail=sanitize_message(f"request timed out: {type(raw).__name__}"),
        )

    if isinstance(raw, httpx.TransportError):
        return TypedError.of(
            ErrorKind.NETWORK_ERROR,
            detail=sanitize_message(f"{type(raw).__name__}: {raw}"),
        )

    if isinstance(raw, ValidationError):
        return TypedError.of(ErrorKind.VALIDATION_ERROR, detail=describe_validation_error(raw))

    return TypedError.of(
        ErrorKind.UNKNOWN_ERROR,
        detail=sanitize_message(f"{type(raw).__name__}: {raw}"),
    )


def classify_response(
    response: httpx.Response,
    *,
    reset_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TypedError:
    """Classify an HTTP error response by status code and provider reason."""
    status = response.status_code
    reasons, message = _provider_error(response)
    reason = next((r for r in reasons if r in AUTH_REASONS | QUOTA_REASONS | RATE_REASONS), None)
    if reason is None and reasons:
        reason = reasons[0]
    label = f"HTTP {status} {reason}" if reason else f"HTTP {status}"
    detail = sanitize_message(f"{label}: {message}" if message else label)
    retry_after = parse_retry_after(response.headers.get("Retry-After"), now=now)
    common = {"http_status": status, "provider_reason": reason, "detail": detail}

    # The provider answers an invalid key with 400 keyInvalid or
    # API_KEY_INVALID, so auth reasons are honored on 400 as well as 401 and 403.
    if status in (400, 401, 403) and reason in AUTH_REASONS:
        return TypedError.of(ErrorKind.AUTHENTICATION_ERROR, **common)
    if status == 401:
        return TypedError.of(ErrorKind.AUTHENTICATION_ERROR, **common)
    if status == 403:
        if reason in QUOTA_REASONS:
            return TypedError.of(
                ErrorKind.QUOTA_EXCEEDED,
                recovery_hints=quota_hints(reset_time),
                **common,
            )
        if reason in RATE_REASONS:
            return TypedError.of(ErrorKind.RATE_LIMITED, retry_after=retry_after, **common)
        return TypedError.of(ErrorKind.FORBIDDEN, **common)
    if status == 429:
        return TypedError.of(ErrorKind.RATE_LIMITED, retry_after=retry_after, **common)
    if status == 404:
        return TypedError.of(ErrorKind.NOT_FOUND, **common)
    if status == 400:
        return TypedError.of(ErrorKind.INVALID_REQUEST, **common)
    if status >= 500:
        return TypedError.of(ErrorKind.SERVER_ERROR, retry_after=retry_after, **common)
    return TypedError.of(ErrorKind.UNKNOWN_ERROR, **common)


def quota_hints(reset_time: Optional[datetime]) -> tuple[str, ...]:
    """Recovery hints for QUOTA_EXCEEDED, naming the reset time when known."""
    if reset_time is None:
        return RECOVERY_HINTS[ErrorKind.QUOTA_EXCEEDED]
    stamp = reset_time.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    return (f"Wait until the quota resets at {stamp}",) + RECOVERY_HINTS[ErrorKind.QUOTA_EXCEEDED][1:]


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header given as seconds or as an HTTP date.

    HTTP dates are measured against ``now``, or the wall clock if omitted.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def describe_validation_error(exc: ValidationError) -> str:
    """Summarize a pydantic error as ``path: message`` pairs."""
    parts = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{path}: {err.get('msg', 'invalid')}")
    return sanitize_message("; ".join(parts))


def _provider_error(response: httpx.Response) -> tuple[list[str], str]:
    """Extract reasons and message from ``{"error": {...}}`` bodies."""
    try:
        body = response.json()
    except ValueError:
        return [], response.reason_phrase or ""
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return [], response.reason_phrase or ""
    reasons = [
        e["reason"]
        for key in ("errors", "details")
        for e in error.get(key) or []
        if isinstance(e, dict) and isinstance(e.get("reason"), str)
    ]
    status = error.get("status")
    if not reasons and isinstance(status, str):
        reasons.append(status)
    return reasons, str(error.get("message") or "")
