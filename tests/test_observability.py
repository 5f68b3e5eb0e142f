"""Tests for the observability module.

Tests for metrics collection, operation timing and logging configuration.
"""
import json
import logging
import time
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from notevault.observability import (
    MetricsCollector,
    configure_logging,
    timed_operation,
    traced,
)


@pytest.fixture
def metrics_collector(temp_base_dir):
    """Create a MetricsCollector writing into the temp directory."""
    return MetricsCollector(metrics_file=temp_base_dir / "metrics.json")


@pytest.fixture
def restore_notevault_logger():
    """Detach handlers configure_logging adds so they don't leak between tests."""
    logger = logging.getLogger("notevault")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
            logger.removeHandler(handler)
    logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_record_successful_operation(self, metrics_collector):
        metrics_collector.record_operation("test_op", 100.0, True)

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["count"] == 1
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["error_count"] == 0
        assert metrics["test_op"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        metrics_collector.record_operation("test_op", 50.0, False, "Test error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["error_count"] == 1
        assert metrics["test_op"]["last_error"] == "Test error"
        assert metrics["test_op"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        metrics_collector.record_operation("test_op", 100.0, True)
        metrics_collector.record_operation("test_op", 200.0, True)
        metrics_collector.record_operation("test_op", 300.0, False, "Error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["count"] == 3
        assert metrics["test_op"]["avg_duration_ms"] == 200.0  # (100+200+300)/3

    def test_save_metrics(self, metrics_collector, temp_base_dir):
        metrics_collector.record_operation("op1", 100.0, True)
        assert metrics_collector.save_metrics() is True

        data = json.loads((temp_base_dir / "metrics.json").read_text())
        assert data["operations"]["op1"]["count"] == 1
        assert not (temp_base_dir / "metrics.tmp").exists()

    def test_get_summary(self, metrics_collector):
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5
        assert set(summary["operations_tracked"]) == {"op1", "op2"}

    def test_empty_summary_reports_full_success(self, metrics_collector):
        assert metrics_collector.get_summary()["overall_success_rate"] == 1.0

    def test_reset_metrics(self, metrics_collector):
        metrics_collector.record_operation("test_op", 100.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation and traced."""

    def test_records_success(self, metrics_collector):
        with patch("notevault.observability.metrics", metrics_collector):
            with timed_operation("test_op", user="alice") as op:
                time.sleep(0.01)
                op["result_count"] = 3

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["avg_duration_ms"] >= 10

    def test_records_failure_and_reraises(self, metrics_collector):
        with patch("notevault.observability.metrics", metrics_collector):
            with pytest.raises(ValueError):
                with timed_operation("test_op"):
                    raise ValueError("Test error")

        assert "Test error" in metrics_collector.get_metrics()["test_op"]["last_error"]

    def test_traced_uses_function_name(self, metrics_collector):
        @traced()
        def list_things():
            return [1, 2]

        with patch("notevault.observability.metrics", metrics_collector):
            assert list_things() == [1, 2]

        assert metrics_collector.get_metrics()["list_things"]["count"] == 1


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_creates_directory_and_file_handler(self, temp_base_dir, restore_notevault_logger):
        log_dir = temp_base_dir / "logs"

        assert configure_logging(log_dir=log_dir, console=False) == log_dir

        assert log_dir.is_dir()
        assert any(
            isinstance(h, RotatingFileHandler) for h in restore_notevault_logger.handlers
        )

    def test_sets_level(self, temp_base_dir, restore_notevault_logger):
        configure_logging(log_dir=temp_base_dir, level=logging.DEBUG, console=False)
        assert restore_notevault_logger.level == logging.DEBUG

    def test_does_not_duplicate_handlers(self, temp_base_dir, restore_notevault_logger):
        configure_logging(log_dir=temp_base_dir)
        count = len(restore_notevault_logger.handlers)
        configure_logging(log_dir=temp_base_dir)
        assert len(restore_notevault_logger.handlers) == count

    def test_child_loggers_reach_the_file(self, temp_base_dir, restore_notevault_logger):
        configure_logging(log_dir=temp_base_dir, console=False)
        logging.getLogger("notevault.storage.user_store").info("hello from the store")
        for handler in restore_notevault_logger.handlers:
            handler.flush()
        assert "hello from the store" in (temp_base_dir / "notevault.log").read_text()
