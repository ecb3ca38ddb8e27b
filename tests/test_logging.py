"""Tests for the logging bootstrap."""

import json
import logging

from aiproxy.configs.system import LoggingConfig
from aiproxy.infra.logging import _build_formatter, _TraceContextFilter, setup_logging


def _record(msg: str, *args) -> logging.LogRecord:
    record = logging.LogRecord(
        "aiproxy.test", logging.WARNING, __file__, 1, msg, args, None
    )
    _TraceContextFilter().filter(record)
    return record


class TestJsonFormatter:
    def test_renamed_fields(self):
        formatter = _build_formatter(LoggingConfig(json_output=True))
        payload = json.loads(formatter.format(_record("retrying in %.1fs", 1.2)))

        assert payload["message"] == "retrying in 1.2s"
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "aiproxy.test"
        assert "timestamp" in payload

    def test_trace_ids_empty_without_span(self):
        formatter = _build_formatter(LoggingConfig(json_output=True))
        payload = json.loads(formatter.format(_record("hello")))
        assert payload["trace_id"] == ""
        assert payload["span_id"] == ""


    def test_extra_fields_become_keys(self):
        formatter = _build_formatter(LoggingConfig(json_output=True))
        record = logging.getLogger("aiproxy.test").makeRecord(
            "aiproxy.test",
            logging.INFO,
            __file__,
            1,
            "Rate limit exceeded for %s",
            ("1.2.3.4",),
            None,
            extra={"client_id": "1.2.3.4", "stage": "admission"},
        )
        _TraceContextFilter().filter(record)
        payload = json.loads(formatter.format(record))

        assert payload["message"] == "Rate limit exceeded for 1.2.3.4"
        assert payload["client_id"] == "1.2.3.4"
        assert payload["stage"] == "admission"


class TestSetupLogging:
    def test_level_and_single_handler(self):
        root = logging.getLogger()
        saved_level, saved_handlers = root.level, root.handlers[:]
        try:
            setup_logging(LoggingConfig(level="debug", json_output=False))
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert logging.getLogger("httpx").level == logging.WARNING
            assert logging.getLogger("uvicorn.access").propagate is False
        finally:
            root.setLevel(saved_level)
            root.handlers = saved_handlers
