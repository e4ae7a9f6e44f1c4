"""Tests for http_service/logging_config.py."""

import io
import json
import logging

import structlog

import http_service.logging_config


def _parse_single_line(output_stream: io.StringIO) -> dict:
    lines = output_stream.getvalue().splitlines()
    assert len(lines) == 1
    return json.loads(lines[0])


class TestConfigureLogging:

    def test_sets_log_level(self):
        http_service.logging_config.configure_logging(log_level="DEBUG", output_stream=io.StringIO())
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        http_service.logging_config.configure_logging(log_level="verbose", output_stream=io.StringIO())
        assert logging.getLogger().level == logging.INFO

    def test_adds_single_handler_with_structlog_formatter(self):
        http_service.logging_config.configure_logging(output_stream=io.StringIO())
        http_service.logging_config.configure_logging(output_stream=io.StringIO())

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_defaults_to_stdout(self, capsys):
        http_service.logging_config.configure_logging()
        structlog.get_logger("test").info("test_event")

        captured = capsys.readouterr()
        assert json.loads(captured.out.strip())["event"] == "test_event"
        assert captured.err == ""

    def test_native_structlog_produces_valid_json(self):
        output_stream = io.StringIO()
        http_service.logging_config.configure_logging(output_stream=output_stream)

        structlog.get_logger("test").info("test_event", key="value")

        parsed = _parse_single_line(output_stream)
        assert parsed["event"] == "test_event"
        assert parsed["key"] == "value"

    def test_output_contains_mandatory_fields(self):
        output_stream = io.StringIO()
        http_service.logging_config.configure_logging(output_stream=output_stream)

        structlog.get_logger("test").warning("test_event")

        parsed = _parse_single_line(output_stream)
        assert parsed["level"] == "WARNING"
        assert parsed["service_name"] == "http-service"
        timestamp = parsed["timestamp"]
        assert "T" in timestamp
        assert timestamp.endswith("Z") or "+" in timestamp

    def test_records_below_level_are_dropped(self):
        output_stream = io.StringIO()
        http_service.logging_config.configure_logging(log_level="WARNING", output_stream=output_stream)

        structlog.get_logger("test").info("ignored_event")

        assert output_stream.getvalue() == ""

    def test_contextvars_are_included(self):
        output_stream = io.StringIO()
        http_service.logging_config.configure_logging(output_stream=output_stream)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-1")
        try:
            structlog.get_logger("test").info("test_event")
        finally:
            structlog.contextvars.clear_contextvars()

        assert _parse_single_line(output_stream)["request_id"] == "req-1"

    def test_stdlib_loggers_produce_json(self):
        """Uvicorn logs through the standard library and must share the format."""
        output_stream = io.StringIO()
        http_service.logging_config.configure_logging(output_stream=output_stream)

        logging.getLogger("uvicorn.error").info("stdlib message")

        parsed = _parse_single_line(output_stream)
        assert parsed["event"] == "stdlib message"
        assert parsed["service_name"] == "http-service"
        assert parsed["level"] == "INFO"

    def test_capture_logs_works_after_configuration(self):
        """Loggers are not cached, so a proxy created earlier follows capture_logs."""
        http_service.logging_config.configure_logging(output_stream=io.StringIO())
        module_logger = structlog.get_logger()
        module_logger.info("before_capture")

        with structlog.testing.capture_logs() as captured_logs:
            module_logger.info("during_capture")

        assert [entry["event"] for entry in captured_logs] == ["during_capture"]

    def test_uvicorn_access_logger_is_silenced(self):
        output_stream = io.StringIO()
        logging.getLogger("uvicorn.access").addHandler(logging.NullHandler())
        http_service.logging_config.configure_logging(output_stream=output_stream)

        logging.getLogger("uvicorn.access").info("GET /health 200")

        assert output_stream.getvalue() == ""
        assert logging.getLogger("uvicorn.access").handlers == []
