"""Tests for structured logging configuration."""

import json
import logging

from tubegateway.app.core.config import Settings
from tubegateway.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    RedactingFilter,
    get_log_context,
    get_logger,
    get_logging_config,
)

FAKE_KEY = "AIza" + "B" * 35


def make_record(msg="Test message", args=(), level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        formatter = JSONFormatter()
        data = json.loads(formatter.format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        """Test JSON formatting with operation context fields."""
        formatter = JSONFormatter()
        record = make_record("Provider call succeeded")
        record.request_id = "abc123def456"
        record.operation = "videos.list"
        record.attempt = 2
        record.circuit_state = "closed"

        data = json.loads(formatter.format(record))

        assert data["request_id"] == "abc123def456"
        assert data["operation"] == "videos.list"
        assert data["attempt"] == 2
        assert data["circuit_state"] == "closed"

    def test_none_context_fields_are_omitted(self):
        formatter = JSONFormatter()
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(formatter.format(record))

        assert "operation" not in data
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        formatter = JSONFormatter()
        record = make_record("Custom event")
        record.error_kind = "network_error"

        data = json.loads(formatter.format(record))

        assert data["extra"]["error_kind"] == "network_error"

    def test_exception_lines_are_redacted(self):
        import sys

        formatter = JSONFormatter()
        try:
            raise ValueError(f"bad url ?key={FAKE_KEY}")
        except ValueError:
            record = make_record("Error occurred", level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(formatter.format(record))
        exception_text = "".join(data["exception"])

        assert "ValueError" in exception_text
        assert FAKE_KEY not in exception_text


class TestContextFilter:
    def test_adds_default_fields(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        for name in ("request_id", "operation", "attempt", "priority", "circuit_state"):
            assert hasattr(record, name)
            assert getattr(record, name) is None

    def test_preserves_existing_values(self):
        record = make_record()
        record.operation = "search"

        ContextFilter().filter(record)

        assert record.operation == "search"


class TestRedactingFilter:
    def test_scrubs_key_from_formatted_message(self):
        record = make_record("GET %s", args=(f"https://example.test/videos?key={FAKE_KEY}&id=1",))

        assert RedactingFilter().filter(record) is True

        message = record.getMessage()
        assert FAKE_KEY not in message
        assert "key=[REDACTED]" in message
        assert "id=1" in message

    def test_leaves_clean_messages_untouched(self):
        record = make_record("quota %d/%d", args=(10, 100))

        RedactingFilter().filter(record)

        assert record.msg == "quota %d/%d"
        assert record.getMessage() == "quota 10/100"


class TestLoggingConfig:
    def test_text_format_uses_standard_formatter(self):
        config = get_logging_config(Settings(log_format="text", log_level="debug"))

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["handlers"]["console"]["level"] == "DEBUG"
        assert "tubegateway" in config["loggers"]

    def test_json_format(self):
        config = get_logging_config(Settings(log_format="json"))

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"].endswith("JSONFormatter")

    def test_every_handler_redacts(self):
        config = get_logging_config(Settings())

        for handler in config["handlers"].values():
            assert "redact" in handler["filters"]


class TestHelpers:
    def test_get_logger(self):
        assert get_logger("tubegateway.test").name == "tubegateway.test"
        assert get_logger().name == "tubegateway"

    def test_get_log_context_drops_none(self):
        context = get_log_context(request_id="r1", operation=None, attempt=1, error_kind="timeout")

        assert context == {"request_id": "r1", "attempt": 1, "error_kind": "timeout"}
