"""
Unit tests for MetricsCollector.

Tests metrics collection functionality including:
- Thread-safety under concurrent access
- Bounded storage with LRU eviction
- Per-collection tags and aggregate counts
"""

import threading

import pytest

from mdb_access.observability import metrics as metrics_module
from mdb_access.observability.metrics import (
    MetricsCollector,
    get_metrics_collector,
    record_operation,
)


@pytest.mark.unit
class TestMetricsCollectorThreadSafety:
    """Test thread-safety of metrics collection."""

    def test_concurrent_record_operation(self):
        """Test that concurrent record_operation calls are thread-safe."""
        collector = MetricsCollector()
        num_threads = 10
        operations_per_thread = 100
        barrier = threading.Barrier(num_threads)

        def record_operations(thread_id: int):
            barrier.wait()
            for i in range(operations_per_thread):
                collector.record_operation(
                    "repository.find",
                    duration_ms=1.0 + i,
                    success=i % 10 != 0,
                    collection=f"c{thread_id % 3}",
                )

        threads = [
            threading.Thread(target=record_operations, args=(i,)) for i in range(num_threads)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert collector.get_operation_count("repository.find") == 1000
        assert collector.get_error_count("repository.find") == 100
        assert len(collector.get_metrics()["metrics"]) == 3

    def test_concurrent_reset(self):
        """Test that reset is safe while other threads record."""
        collector = MetricsCollector()
        for i in range(20):
            collector.record_operation(f"op_{i}", duration_ms=1.0)
        errors = []

        def reset_or_record(thread_id: int):
            try:
                if thread_id == 0:
                    collector.reset()
                else:
                    collector.record_operation(f"op_{thread_id}", duration_ms=1.0)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=reset_or_record, args=(i,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []


@pytest.mark.unit
class TestMetricsCollectorBoundedStorage:
    """Test bounded storage and LRU eviction."""

    def test_max_metrics_limit(self):
        collector = MetricsCollector(max_metrics=5)
        for i in range(8):
            collector.record_operation(f"op_{i}", duration_ms=10.0)
        assert len(collector.get_metrics()["metrics"]) == 5

    def test_recently_recorded_survives_eviction(self):
        """Test that recording again moves a key to the most recent position."""
        collector = MetricsCollector(max_metrics=3)
        for i in range(3):
            collector.record_operation(f"op_{i}", duration_ms=10.0)

        collector.record_operation("op_0", duration_ms=20.0)
        collector.record_operation("op_3", duration_ms=10.0)

        keys = set(collector.get_metrics()["metrics"])
        assert keys == {"op_0", "op_2", "op_3"}

    def test_no_eviction_on_update(self):
        collector = MetricsCollector(max_metrics=3)
        for i in range(3):
            collector.record_operation(f"op_{i}", duration_ms=10.0)
        collector.record_operation("op_0", duration_ms=20.0)

        metrics = collector.get_metrics()["metrics"]
        assert len(metrics) == 3
        assert metrics["op_0"]["count"] == 2
        assert metrics["op_0"]["avg_duration_ms"] == 15.0


@pytest.mark.unit
class TestMetricsCollectorFunctionality:
    """Test basic metrics collection functionality."""

    def test_tagged_key(self):
        collector = MetricsCollector()
        collector.record_operation(
            "repository.create", duration_ms=5.0, collection="orders", success=False
        )

        metrics = collector.get_metrics()["metrics"]
        entry = metrics["repository.create[collection=orders]"]
        assert entry["error_count"] == 1
        assert entry["error_rate_percent"] == 100.0

    def test_filter_by_prefix(self):
        collector = MetricsCollector()
        collector.record_operation("repository.find", duration_ms=1.0)
        collector.record_operation("repository.get", duration_ms=1.0)
        collector.record_operation("transaction.commit", duration_ms=1.0)

        assert set(collector.get_metrics("repository")["metrics"]) == {
            "repository.find",
            "repository.get",
        }

    def test_counts_across_tags(self):
        collector = MetricsCollector()
        collector.record_operation("repository.get", duration_ms=1.0, collection="a")
        collector.record_operation("repository.get", duration_ms=1.0, collection="b")
        collector.record_operation("repository.find", duration_ms=1.0, collection="a")

        assert collector.get_operation_count("repository.get") == 2
        assert collector.get_error_count("repository.get") == 0

    def test_empty_metrics_min_duration(self):
        collector = MetricsCollector()
        collector.record_operation("op", duration_ms=3.0)
        assert collector.get_metrics()["metrics"]["op"]["min_duration_ms"] == 3.0


@pytest.mark.unit
class TestGlobalMetricsFunctions:
    """Test the process-wide collector."""

    def test_get_metrics_collector_singleton(self):
        assert get_metrics_collector() is get_metrics_collector()

    def test_record_operation_global(self, monkeypatch):
        monkeypatch.setattr(metrics_module, "_metrics_collector", None)
        record_operation("connection.initialize", duration_ms=10.0)
        assert get_metrics_collector().get_operation_count("connection.initialize") == 1
