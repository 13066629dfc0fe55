"""Unit tests for Flux logging and observability.

This module tests the JSON formatter, performance monitoring and the
operation, domain-event and error logging helpers.
"""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from flux.flux_logging import (
    JsonFormatter,
    PerformanceMonitor,
    log_domain_event,
    log_error_with_context,
    log_operation,
    log_performance,
    performance_monitor,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_monitor():
    performance_monitor.clear()
    yield
    performance_monitor.clear()


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def test_json_formatter_basic(self):
        """Test basic JSON formatting."""
        formatter = JsonFormatter()
        record = logging.getLogger("test").makeRecord("test", logging.INFO, "flux.py", 1, "Test message", (), None)

        data = json.loads(formatter.format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data

    def test_json_formatter_with_exception(self):
        """Test JSON formatting with exception info."""
        formatter = JsonFormatter()
        try:
            raise ValueError("Test exception")
        except ValueError as exc:
            record = logging.getLogger("test").makeRecord(
                "test", logging.ERROR, "flux.py", 1, "Test message", (), (type(exc), exc, exc.__traceback__)
            )

        data = json.loads(formatter.format(record))

        assert data["level"] == "ERROR"
        assert "ValueError" in data["exception"]

    def test_json_formatter_with_extra_fields(self):
        """Test extra fields are merged and non-JSON values are stringified."""
        formatter = JsonFormatter()
        record = logging.getLogger("test").makeRecord("test", logging.INFO, "flux.py", 1, "Test message", (), None)
        record.extra_fields = {"quote": "Q-2025-0001", "path": object()}

        data = json.loads(formatter.format(record))

        assert data["quote"] == "Q-2025-0001"
        assert isinstance(data["path"], str)


class TestSetupLogging:
    """Test cases for setup_logging."""

    def test_console_and_file_handlers(self, tmp_path):
        """Test a log file gets a JSON handler and its directory is created."""
        log_file = tmp_path / "logs" / "flux.log"
        logger = logging.getLogger("flux")
        try:
            setup_logging("DEBUG", log_file)
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 2
            assert any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers)

            logging.getLogger("flux.store").info("hello")
            for handler in logger.handlers:
                handler.flush()
            lines = log_file.read_text().strip().splitlines()
            assert json.loads(lines[-1])["message"] == "hello"
        finally:
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()

    def test_setup_is_idempotent(self):
        """Test calling setup twice does not stack handlers."""
        logger = logging.getLogger("flux")
        try:
            setup_logging()
            setup_logging()
            assert len(logger.handlers) == 1
        finally:
            logger.handlers.clear()


class TestPerformanceMonitor:
    """Test cases for PerformanceMonitor."""

    def test_record_metric(self):
        """Test recording a performance metric."""
        monitor = PerformanceMonitor()
        monitor.record_metric("create_quote_duration", 0.5, {"status": "success"})

        samples = monitor.recent("create_quote_duration")

        assert samples[0]["value"] == 0.5
        assert samples[0]["tags"] == {"status": "success"}

    def test_samples_are_capped_per_metric(self):
        """Test only the most recent window of samples is retained."""
        monitor = PerformanceMonitor(window=3)
        for value in range(10):
            monitor.record_metric("cleanup_project_duration", value)
        monitor.record_metric("create_quote_duration", 1)

        assert [s["value"] for s in monitor.recent("cleanup_project_duration")] == [7, 8, 9]
        assert len(monitor.recent("create_quote_duration")) == 1

    def test_summary_counts_every_sample(self):
        """Test running totals survive samples dropping out of the window."""
        monitor = PerformanceMonitor(window=2)
        monitor.record_metric("create_quote_duration", 1.0, {"status": "success"})
        monitor.record_metric("create_quote_duration", 3.0, {"status": "error", "error_type": "ValidationError"})
        monitor.record_metric("create_quote_duration", 2.0, {"status": "success"})

        assert monitor.summary() == {
            "create_quote_duration": {"count": 3, "errors": 1, "mean": 2.0, "max": 3.0},
        }

    def test_clear(self):
        """Test clearing removes every metric."""
        monitor = PerformanceMonitor()
        monitor.record_metric("a", 1)
        monitor.clear()
        assert monitor.recent("a") == []
        assert monitor.summary() == {}


class TestLogPerformance:
    """Test cases for the log_performance decorator."""

    def test_success_is_recorded(self):
        """Test a successful call records a success metric."""
        @log_performance("sample")
        def sample():
            return "done"

        assert sample() == "done"
        metric = performance_monitor.recent("sample_duration")[0]
        assert metric["value"] >= 0
        assert metric["tags"]["status"] == "success"

    def test_failure_is_recorded_and_reraised(self):
        """Test a failing call records the error type and re-raises."""
        @log_performance("sample")
        def sample():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            sample()
        metric = performance_monitor.recent("sample_duration")[0]
        assert metric["tags"] == {"status": "error", "error_type": "ValueError"}

    def test_cleanup_is_instrumented(self, store):
        """Test project cleanup reports its duration."""
        from flux.dependencies import DependencyEngine

        project = store.create_project("Website")
        DependencyEngine(store).cleanup_project(project.id)
        assert len(performance_monitor.recent("cleanup_project_duration")) == 1


class TestLogOperation:
    """Test cases for the log_operation context manager."""

    def test_log_operation_success(self):
        """Test successful operation logging."""
        with patch("flux.flux_logging.std_logging.getLogger") as mock_logger:
            mock_logger_instance = MagicMock()
            mock_logger.return_value = mock_logger_instance

            with log_operation("create_project", project="Website"):
                pass

            assert mock_logger_instance.info.called
            assert mock_logger_instance.error.called is False

    def test_log_operation_failure(self):
        """Test failed operation logging re-raises."""
        with patch("flux.flux_logging.std_logging.getLogger") as mock_logger:
            mock_logger_instance = MagicMock()
            mock_logger.return_value = mock_logger_instance

            with pytest.raises(RuntimeError):
                with log_operation("create_project"):
                    raise RuntimeError("disk full")

            assert mock_logger_instance.error.called
            extra = mock_logger_instance.error.call_args.kwargs["extra"]["extra_fields"]
            assert extra["status"] == "failed"
            assert extra["error_type"] == "RuntimeError"


class TestEventAndErrorLogging:
    """Test cases for domain-event and error logging."""

    def test_domain_event(self, caplog):
        """Test domain events are logged on the events logger."""
        with caplog.at_level(logging.INFO, logger="flux.events"):
            log_domain_event("task.created", task_id="abc1234")
        record = caplog.records[-1]
        assert record.name == "flux.events"
        assert record.extra_fields["event"] == "task.created"
        assert record.extra_fields["task_id"] == "abc1234"

    def test_error_with_context(self, caplog):
        """Test errors carry their context and traceback."""
        with caplog.at_level(logging.ERROR, logger="flux.errors"):
            log_error_with_context(RuntimeError("boom"), {"operation": "trigger_webhook", "event": "task.created"})
        record = caplog.records[-1]
        assert "trigger_webhook" in record.getMessage()
        assert record.extra_fields["context"]["event"] == "task.created"
        assert record.exc_info is not None
