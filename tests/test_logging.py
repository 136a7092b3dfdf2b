"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from filehub.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="filehub.test",
        level=level,
        pathname="store.py",
        lineno=7,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "filehub.test"
        assert data["message"] == "Test message"
        assert data["source"] == {"file": "store.py", "line": 7, "function": None}
        assert "timestamp" in data

    def test_context_fields(self):
        record = make_record("Rate limit exceeded")
        record.identifier = "10.0.0.1:/api/logs"
        record.client_ip = "10.0.0.1"
        record.status_code = 429

        data = json.loads(JSONFormatter().format(record))

        assert data["identifier"] == "10.0.0.1:/api/logs"
        assert data["client_ip"] == "10.0.0.1"
        assert data["status_code"] == 429
        assert "extra" not in data

    def test_unset_context_fields_are_omitted(self):
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "request_id" not in data
        assert "identifier" not in data

    def test_extra_fields(self):
        record = make_record()
        record.store = "InMemoryStore"
        record.limit = 10

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"] == {"store": "InMemoryStore", "limit": 10}

    def test_exception(self):
        try:
            raise ConnectionError("redis down")
        except ConnectionError:
            record = make_record("Store failed", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        text = "".join(data["exception"])
        assert "ConnectionError" in text
        assert "redis down" in text

    def test_unicode(self):
        data = json.loads(JSONFormatter().format(make_record("Файл загружен ✓")))
        assert data["message"] == "Файл загружен ✓"


class TestContextFilter:

    def test_adds_defaults(self):
        record = make_record()
        assert ContextFilter().filter(record) is True
        for field in JSONFormatter.CONTEXT_FIELDS:
            assert getattr(record, field) is None

    def test_preserves_existing(self):
        record = make_record()
        record.request_id = "req-1"
        ContextFilter().filter(record)
        assert record.request_id == "req-1"


class TestLoggingConfig:

    def test_text_format(self):
        with patch("filehub.app.core.logging.settings") as settings:
            settings.log_format = "text"
            settings.log_level = "debug"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["filehub"]["level"] == "DEBUG"
        assert config["loggers"]["filehub"]["propagate"] is False

    def test_json_format(self):
        with patch("filehub.app.core.logging.settings") as settings:
            settings.log_format = "json"
            settings.log_level = "INFO"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"] == "filehub.app.core.logging.JSONFormatter"

    def test_structured_format(self):
        with patch("filehub.app.core.logging.settings") as settings:
            settings.log_format = "structured"
            settings.log_level = "INFO"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert "identifier=%(identifier)s" in config["formatters"]["structured"]["format"]

    def test_setup_logging(self):
        setup_logging()
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert get_logger().name == "filehub"


class TestGetLogContext:

    def test_drops_none(self):
        assert get_log_context(request_id="r1", identifier=None) == {"request_id": "r1"}

    def test_extra_kwargs(self):
        context = get_log_context(identifier="u", limit=5)
        assert context == {"identifier": "u", "limit": 5}
