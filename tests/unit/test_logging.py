"""Unit tests for taskledger logging and observability.

This module tests the logging infrastructure, performance monitoring,
and observability hooks.
"""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from taskledger.ledger import TaskLedger
from taskledger.ledger_logging import (
    ROOT_LOGGER,
    JsonFormatter,
    ObservabilityHooks,
    PerformanceMonitor,
    log_error_with_context,
    log_operation,
    log_performance,
    log_task_event,
    observability_hooks,
    performance_monitor,
    setup_logging,
)


def make_record(level=logging.INFO, msg="Test message", exc_info=None):
    return logging.LogRecord("test", level, __file__, 10, msg, (), exc_info)


@pytest.fixture
def clean_ledger_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def test_json_formatter_basic(self):
        """Test basic JSON formatting."""
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert "module" in data
        assert "function" in data
        assert "line" in data

    def test_json_formatter_with_exception(self):
        """Test JSON formatting with exception info."""
        try:
            raise ValueError("Test exception")
        except ValueError:
            record = make_record(logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "ERROR"
        assert "ValueError" in data["exception"]

    def test_json_formatter_with_extra_fields(self):
        """Test JSON formatting with extra fields."""
        record = make_record()
        record.extra_fields = {"task_id": "abc"}

        assert json.loads(JsonFormatter().format(record))["task_id"] == "abc"


class TestPerformanceMonitor:
    """Test cases for PerformanceMonitor."""

    def test_record_metric(self):
        """Test recording a performance metric."""
        monitor = PerformanceMonitor()
        monitor.record_metric("test_metric", 42, {"tag": "test"})

        metrics = monitor.get_metrics("test_metric")

        assert metrics["test_metric"][0]["value"] == 42
        assert metrics["test_metric"][0]["tags"]["tag"] == "test"
        assert "timestamp" in metrics["test_metric"][0]

    def test_get_all_metrics_and_reset(self):
        """Test getting all metrics and clearing them."""
        monitor = PerformanceMonitor()
        monitor.record_metric("metric1", 1)
        monitor.record_metric("metric2", 2)
        monitor.record_metric("metric1", 3)

        all_metrics = monitor.get_metrics()
        assert [m["value"] for m in all_metrics["metric1"]] == [1, 3]
        assert len(all_metrics["metric2"]) == 1

        monitor.reset()
        assert monitor.get_metrics() == {}

    def test_retained_metrics_are_capped(self):
        """Only the newest max_samples metrics are kept per name."""
        monitor = PerformanceMonitor(max_samples=5)
        for value in range(20):
            monitor.record_metric("busy", value)

        assert [m["value"] for m in monitor.get_metrics("busy")["busy"]] == [15, 16, 17, 18, 19]

    def test_repeated_operations_stay_bounded(self, tmp_path, monkeypatch):
        """A long-running server does not accumulate a metric per call."""
        monkeypatch.setattr(performance_monitor, "max_samples", 10)
        performance_monitor.reset()
        ledger = TaskLedger(tmp_path)
        task = ledger.create_task("Login form", "Build the form")

        for _ in range(50):
            ledger.start_execution(task.id)

        assert len(performance_monitor.get_metrics("start_execution_duration")["start_execution_duration"]) == 10
        performance_monitor.reset()


class TestLogPerformance:
    """Test cases for log_performance decorator."""

    def setup_method(self):
        performance_monitor.reset()

    def test_log_performance_decorator(self):
        """Successful calls record a success metric."""

        @log_performance("unit_operation")
        def operation():
            return "result"

        assert operation() == "result"
        metrics = performance_monitor.get_metrics("unit_operation_duration")["unit_operation_duration"]
        assert len(metrics) == 1
        assert metrics[0]["value"] >= 0
        assert metrics[0]["tags"]["status"] == "success"

    def test_log_performance_decorator_with_exception(self):
        """Failures record an error metric and re-raise."""

        @log_performance("unit_operation")
        def operation():
            raise ValueError("Test error")

        with pytest.raises(ValueError):
            operation()

        metrics = performance_monitor.get_metrics("unit_operation_duration")["unit_operation_duration"]
        assert metrics[0]["tags"] == {"status": "error", "error_type": "ValueError"}


class TestLogOperation:
    """Test cases for log_operation context manager."""

    def test_log_operation_success(self, caplog):
        with caplog.at_level(logging.DEBUG, logger=f"{ROOT_LOGGER}.operations"):
            with log_operation("unit_operation", task_id="abc"):
                pass

        messages = [record.getMessage() for record in caplog.records]
        assert any(message.startswith("Completed operation: unit_operation") for message in messages)
        assert not any(record.levelno >= logging.ERROR for record in caplog.records)

    def test_log_operation_with_exception(self, caplog):
        with caplog.at_level(logging.DEBUG, logger=f"{ROOT_LOGGER}.operations"):
            with pytest.raises(ValueError):
                with log_operation("unit_operation"):
                    raise ValueError("Test error")

        errors = [record for record in caplog.records if record.levelno == logging.ERROR]
        assert errors and "Test error" in errors[0].getMessage()
        assert errors[0].extra_fields["status"] == "failed"


class TestObservabilityHooks:
    """Test cases for ObservabilityHooks."""

    def test_register_trigger_and_unregister(self):
        hooks = ObservabilityHooks()
        received = []

        def callback(**data):
            received.append(data)

        hooks.register_hook("task_completed", callback)
        hooks.log_event("task_completed", task_id="abc", score=90)
        hooks.unregister_hook("task_completed", callback)
        hooks.log_event("task_completed", task_id="def")

        assert len(received) == 1
        assert received[0]["task_id"] == "abc"
        assert received[0]["score"] == 90

    def test_hook_failure_handling(self):
        """A failing hook does not propagate."""
        hooks = ObservabilityHooks()

        def failing_callback(**data):
            raise ValueError("Hook failed")

        hooks.register_hook("test_event", failing_callback)
        hooks.trigger_hooks("test_event", param="value")

    def test_log_task_event_prefixes_event_name(self):
        with patch("taskledger.ledger_logging.observability_hooks") as mock_hooks:
            log_task_event("Started", "abc", task_name="Login")

        mock_hooks.log_event.assert_called_once_with("task_started", task_id="abc", task_name="Login")


class TestErrorLogging:
    """Test cases for log_error_with_context."""

    def test_log_error_with_context(self, caplog):
        with caplog.at_level(logging.ERROR, logger=f"{ROOT_LOGGER}.errors"):
            log_error_with_context(ValueError("Test error"), {"operation": "unit_operation"}, task_id="abc")

        record = caplog.records[-1]
        assert "unit_operation" in record.getMessage()
        assert record.extra_fields["error_type"] == "ValueError"
        assert record.extra_fields["context"] == {"operation": "unit_operation"}
        assert record.extra_fields["task_id"] == "abc"


class TestLoggingIntegration:
    """Integration tests for logging functionality."""

    def test_setup_logging_writes_json_file(self, tmp_path, clean_ledger_logger):
        log_file = tmp_path / "logs" / "ledger.log"
        setup_logging(log_level=logging.DEBUG, log_file=log_file)

        logging.getLogger(f"{ROOT_LOGGER}.test").info("Test message")
        observability_hooks.log_event("task_created", task_id="abc")

        content = log_file.read_text(encoding="utf-8")
        entries = [json.loads(line) for line in content.strip().splitlines()]
        assert any(entry["message"] == "Test message" for entry in entries)
        assert any(entry.get("event_type") == "task_created" for entry in entries)
