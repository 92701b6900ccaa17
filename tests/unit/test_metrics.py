"""
Unit tests for metrics collection.
"""

import pytest
from prometheus_client import CollectorRegistry

from taskscheduler.observability.metrics import MetricsCollector


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    @pytest.fixture
    def registry(self) -> CollectorRegistry:
        """Create an isolated registry."""
        return CollectorRegistry()

    @pytest.fixture
    def metrics(self, registry: CollectorRegistry) -> MetricsCollector:
        """Create a collector on its own registry."""
        return MetricsCollector(registry=registry)

    def test_job_counters(self, metrics: MetricsCollector, registry: CollectorRegistry):
        """Test submission, collection and completion counters."""
        metrics.record_job_submitted("echo")
        metrics.record_job_collected("dispatcher-1")
        metrics.record_job_completed("echo", "done", 0.2)

        assert registry.get_sample_value(
            "jobs_submitted_total", {"job_class": "echo"}
        ) == 1.0
        assert registry.get_sample_value(
            "jobs_collected_total", {"dispatcher_id": "dispatcher-1"}
        ) == 1.0
        assert registry.get_sample_value(
            "jobs_completed_total", {"job_class": "echo", "status": "done"}
        ) == 1.0
        assert registry.get_sample_value(
            "job_duration_seconds_count", {"job_class": "echo", "status": "done"}
        ) == 1.0
        assert registry.get_sample_value(
            "job_duration_seconds_sum", {"job_class": "echo", "status": "done"}
        ) == pytest.approx(0.2)

    def test_local_queue_gauge(self, metrics: MetricsCollector, registry: CollectorRegistry):
        """Test the local queue size is a gauge."""
        metrics.update_local_queue_size("dispatcher-1", 3)
        metrics.update_local_queue_size("dispatcher-1", 1)

        assert registry.get_sample_value(
            "local_queue_size", {"dispatcher_id": "dispatcher-1"}
        ) == 1.0

    def test_cursor_restarts(self, metrics: MetricsCollector, registry: CollectorRegistry):
        """Test cursor restarts are counted by reason."""
        metrics.record_cursor_restart("dead")
        metrics.record_cursor_restart("dead")
        metrics.record_cursor_restart("error")

        assert registry.get_sample_value("cursor_restarts_total", {"reason": "dead"}) == 2.0
        assert registry.get_sample_value("cursor_restarts_total", {"reason": "error"}) == 1.0
