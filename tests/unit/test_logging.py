"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path
from typing import Any

import pytest
import structlog

from pipewright.config import LoggingConfig
from pipewright.logging import (
    add_correlation_id,
    bind_task_context,
    clear_task_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging() -> None:
    """Reset logging configuration before each test."""
    root = logging.getLogger()
    root.handlers.clear()

    structlog.reset_defaults()

    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)


@pytest.fixture
def capture_stream() -> StringIO:
    """Create a StringIO stream for capturing log output."""
    return StringIO()


@pytest.fixture
def json_config() -> LoggingConfig:
    """Create a LoggingConfig for JSON output to stdout."""
    return LoggingConfig(level="INFO", format="json", file=None)


@pytest.fixture
def console_config() -> LoggingConfig:
    """Create a LoggingConfig for console output to stdout."""
    return LoggingConfig(level="DEBUG", format="console", file=None)


def _capture(stream: StringIO) -> None:
    root = logging.getLogger()
    root.handlers[0].stream = stream


def test_json_output_format(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that JSON format produces valid JSON output."""
    setup_logging(json_config)
    _capture(capture_stream)

    logger = get_logger("test.module")
    logger.info("test_event", key1="value1", key2=42)

    log_entry = json.loads(capture_stream.getvalue().strip())

    assert log_entry["event"] == "test_event"
    assert log_entry["key1"] == "value1"
    assert log_entry["key2"] == 42
    assert log_entry["level"] == "info"
    assert log_entry["logger"] == "test.module"
    assert "timestamp" in log_entry


def test_console_output_format(console_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that console format produces human-readable output."""
    setup_logging(console_config)
    _capture(capture_stream)

    logger = get_logger("test.module")
    logger.debug("test_event", status="active")

    output = capture_stream.getvalue()
    assert "test_event" in output
    assert "active" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that log level filtering works correctly."""
    setup_logging(json_config)
    _capture(capture_stream)

    logger = get_logger("test.module")

    logger.debug("debug_message")
    assert capture_stream.getvalue() == ""

    logger.warning("warning_message")
    assert "warning_message" in capture_stream.getvalue()


def test_correlation_id_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that correlation ID is added to log entries."""
    setup_logging(json_config)
    _capture(capture_stream)

    logger = get_logger("test.module")

    set_correlation_id("corr-12345")
    assert get_correlation_id() == "corr-12345"

    logger.info("test_with_correlation")
    log_entry = json.loads(capture_stream.getvalue().strip())
    assert log_entry["correlation_id"] == "corr-12345"

    set_correlation_id(None)
    capture_stream.truncate(0)
    capture_stream.seek(0)
    logger.info("test_without_correlation")
    log_entry = json.loads(capture_stream.getvalue().strip())
    assert "correlation_id" not in log_entry


def test_correlation_id_processor() -> None:
    """Test the correlation ID processor directly."""
    event_dict: dict[str, Any] = {"event": "test"}

    result = add_correlation_id(None, "", event_dict.copy())
    assert "correlation_id" not in result

    set_correlation_id("test-id")
    result = add_correlation_id(None, "", event_dict.copy())
    assert result["correlation_id"] == "test-id"

    set_correlation_id(None)


def test_task_context_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that queue task context is bound and cleared."""
    setup_logging(json_config)
    _capture(capture_stream)

    logger = get_logger("test.module")

    bind_task_context(task_id=42, task_type="generate_plan")
    logger.info("task_event")
    log_entry = json.loads(capture_stream.getvalue().strip())
    assert log_entry["task_id"] == 42
    assert log_entry["task_type"] == "generate_plan"

    clear_task_context()
    capture_stream.truncate(0)
    capture_stream.seek(0)
    logger.info("after_task")
    log_entry = json.loads(capture_stream.getvalue().strip())
    assert "task_id" not in log_entry
    assert "task_type" not in log_entry


def test_file_rotation_handler_configuration(tmp_path: Path) -> None:
    """Test that file rotation handler is configured correctly."""
    log_file = tmp_path / "pipewright.log"
    config = LoggingConfig(
        level="INFO",
        format="json",
        file=log_file,
        rotation_size_mb=10,
        retention_count=3,
    )

    setup_logging(config)

    root = logging.getLogger()
    assert len(root.handlers) == 1

    handler = root.handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 10 * 1024 * 1024
    assert handler.backupCount == 3

    logger = get_logger("test.module")
    logger.info("test_file_write", data="test")
    handler.flush()

    log_entry = json.loads(log_file.read_text().strip())
    assert log_entry["event"] == "test_file_write"
    assert log_entry["data"] == "test"


def test_file_rotation_creates_parent_directories(tmp_path: Path) -> None:
    """Test that parent directories are created for log file."""
    log_file = tmp_path / "subdir" / "nested" / "pipewright.log"
    setup_logging(LoggingConfig(level="INFO", format="json", file=log_file))

    assert log_file.parent.exists()
    assert log_file.exists()


def test_exception_formatting(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that exceptions are formatted correctly in logs."""
    setup_logging(json_config)
    _capture(capture_stream)

    logger = get_logger("test.module")
    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.exception("error_occurred")

    log_entry = json.loads(capture_stream.getvalue().strip())
    assert log_entry["event"] == "error_occurred"
    assert log_entry["level"] == "error"
    assert "ValueError: Test exception" in log_entry["exception"]


def test_bound_component_in_output(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that values bound with logger.bind appear in every entry."""
    setup_logging(json_config)
    _capture(capture_stream)

    logger = get_logger("pipewright.orchestrator.queue_manager").bind(
        component="TaskQueueManager"
    )
    logger.info("queue_cycle_started", selected=2)

    log_entry = json.loads(capture_stream.getvalue().strip())
    assert log_entry["component"] == "TaskQueueManager"
    assert log_entry["logger"] == "pipewright.orchestrator.queue_manager"
    assert log_entry["selected"] == 2
