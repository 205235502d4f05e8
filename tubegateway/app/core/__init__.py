"""Core utilities for the gateway."""

from tubegateway.app.core.cancellation import CancellationToken
from tubegateway.app.core.config import Settings, settings
from tubegateway.app.core.http_client import create_http_client, init_http_client
from tubegateway.app.core.logging import get_log_context, get_logger, setup_logging
from tubegateway.app.core.security import key_fingerprint, redact_secrets, sanitize_message

__all__ = [
    "CancellationToken",
    "Settings",
    "settings",
    "create_http_client",
    "init_http_client",
    "get_log_context",
    "get_logger",
    "setup_logging",
    "key_fingerprint",
    "redact_secrets",
    "sanitize_message",
]
