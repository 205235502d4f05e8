"""Logging setup for the gateway.

Stdlib ``logging`` configured through ``dictConfig``. Output is plain text,
text with operation context appended, or one JSON object per line. Every
handler runs the redaction filter first, so key material never reaches a sink.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from tubegateway.app.core.config import Settings, settings as default_settings
from tubegateway.app.core.security import redact_secrets

# Per-call context carried on records via ``extra=``
CONTEXT_FIELDS = (
    "request_id",     # Gateway invocation ID
    "operation",      # Provider operation kind (search, videos.list, ...)
    "attempt",        # Retry attempt number (1-based)
    "priority",       # Rate limiter priority tier
    "circuit_state",  # Breaker state at log time
    "quota_used",     # Committed quota units
    "duration_ms",    # Provider call duration in milliseconds
)

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_STRUCTURED_FORMAT = (
    _TEXT_FORMAT + " - request_id=%(request_id)s - operation=%(operation)s - attempt=%(attempt)s"
)

# Attributes every LogRecord has; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers such as Loki or ELK."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        payload: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }
        payload.update(self._context(record))

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = [
                redact_secrets(line) for line in traceback.format_exception(*record.exc_info)
            ]
        return json.dumps(payload, default=str, ensure_ascii=False)

    @staticmethod
    def _context(record: logging.LogRecord) -> Dict[str, Any]:
        found = {}
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                found[name] = value
        return found


class ContextFilter(logging.Filter):
    """Give every record the context attributes the text formats reference."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


class RedactingFilter(logging.Filter):
    """Scrub key material from the rendered message before any handler sees it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def _stream_handler(stream, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": level,
        "formatter": formatter,
        "stream": stream,
        "filters": ["redact", "context"],
    }


def get_logging_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Build the ``dictConfig`` mapping for the configured level and format.

    ``log_format`` is ``text``, ``structured`` or ``json``.
    """
    config = config or default_settings
    log_format = config.log_format.lower()
    level = config.log_level.upper()

    formatters: Dict[str, Any] = {
        "standard": {"format": _TEXT_FORMAT},
        "structured": {"format": _STRUCTURED_FORMAT},
    }
    if log_format == "json":
        formatters["json"] = {"()": "tubegateway.app.core.logging.JSONFormatter"}
        chosen = "json"
    elif log_format == "structured":
        chosen = "structured"
    else:
        chosen = "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "tubegateway.app.core.logging.ContextFilter"},
            "redact": {"()": "tubegateway.app.core.logging.RedactingFilter"},
        },
        "handlers": {
            "console": _stream_handler(sys.stdout, level, chosen),
            "error_console": _stream_handler(sys.stderr, "ERROR", chosen),
        },
        "loggers": {
            "tubegateway": {
                "level": level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            # httpx logs full request URLs, which carry the key query parameter
            "httpx": {"level": "WARNING", "handlers": ["console"], "propagate": False},
            "httpcore": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def setup_logging(config: Optional[Settings] = None) -> None:
    """Configure logging for the gateway."""
    logging.config.dictConfig(get_logging_config(config))


def get_logger(name: str = "tubegateway") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    operation: Optional[str] = None,
    attempt: Optional[int] = None,
    priority: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, leaving out unset fields.

    Example:
        >>> logger.info(
        ...     "Provider call succeeded",
        ...     extra=get_log_context(request_id="abc123", operation="search", attempt=1)
        ... )
    """
    context = {
        "request_id": request_id,
        "operation": operation,
        "attempt": attempt,
        "priority": priority,
        **extra,
    }
    return {key: value for key, value in context.items() if value is not None}
