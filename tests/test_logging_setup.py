"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Component tagging and session correlation
- PII-aware logging helpers
- latency_ms rendering
- Log level configuration
"""
import json
import logging
from io import StringIO
from datetime import datetime

import pytest

from logging_setup import (
    setup_logging,
    get_logger,
    Component,
    JSONFormatter,
)


@pytest.fixture
def capture_logs():
    """Capture log output to a string buffer."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger()
    logger.handlers = []
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield buffer

    logger.handlers = []


def _single_entry(buffer: StringIO) -> dict:
    return json.loads(buffer.getvalue().strip())


def test_json_formatter_basic(capture_logs):
    logger = get_logger(Component.ORCHESTRATOR)
    logger.info("Turn started", queue_length=2)

    log_entry = _single_entry(capture_logs)

    assert log_entry["severity"] == "info"
    assert log_entry["component"] == "orchestrator"
    assert log_entry["message"] == "Turn started"
    assert log_entry["queue_length"] == 2
    datetime.fromisoformat(log_entry["timestamp"])


def test_session_id_correlation(capture_logs):
    logger = get_logger(Component.TRANSCRIBER, session_id="sess_123")
    logger.info("Transcriber connected")

    assert _single_entry(capture_logs)["session_id"] == "sess_123"


def test_session_id_absent_when_not_provided(capture_logs):
    get_logger(Component.SERVER).info("Server ready")

    assert "session_id" not in _single_entry(capture_logs)


def test_with_session_keeps_component(capture_logs):
    base_logger = get_logger(Component.TTS)
    base_logger.with_session("sess_456").info("Synthesis done")

    log_entry = _single_entry(capture_logs)
    assert log_entry["session_id"] == "sess_456"
    assert log_entry["component"] == "tts"


def test_pii_logged_in_separate_field(capture_logs):
    logger = get_logger(Component.ORCHESTRATOR, session_id="sess_789")
    logger.info_pii("Final transcript", text="¿Qué es Mounjaro?")

    log_entry = _single_entry(capture_logs)
    assert log_entry["pii"] == {"text": "¿Qué es Mounjaro?"}
    assert "text" not in log_entry


def test_debug_pii_method(capture_logs):
    get_logger(Component.ORCHESTRATOR).debug_pii("Partial", text="qué es")

    log_entry = _single_entry(capture_logs)
    assert log_entry["severity"] == "debug"
    assert log_entry["pii"]["text"] == "qué es"


def test_severity_levels(capture_logs):
    logger = get_logger(Component.SEARCH)

    logger.debug("d")
    logger.info("i")
    logger.warning("w")
    logger.error("e")
    logger.critical("c")

    lines = [line for line in capture_logs.getvalue().strip().split("\n") if line]
    severities = [json.loads(line)["severity"] for line in lines]
    assert severities == ["debug", "info", "warning", "error", "critical"]


def test_component_string_fallback(capture_logs):
    get_logger("custom_component").info("Test")

    assert _single_entry(capture_logs)["component"] == "custom_component"


def test_latency_rendered_with_unit(capture_logs, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    get_logger(Component.LLM).info("Completion received", latency_ms=412)

    assert '"latency_ms": 412 ms' in capture_logs.getvalue()


def test_exception_logging(capture_logs):
    logger = get_logger(Component.ERROR_HANDLER)

    try:
        raise ValueError("boom")
    except ValueError:
        logger.exception("Provider call failed")

    log_entry = _single_entry(capture_logs)
    assert "ValueError: boom" in log_entry["exception"]


def test_setup_logging_json():
    setup_logging(level="DEBUG", use_json=True)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_text():
    setup_logging(level="warning", use_json=False)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.WARNING
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)
