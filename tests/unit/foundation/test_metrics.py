"""Tests for metrics collection."""

import json

import pytest

from sitemirror.foundation.metrics import MetricsCollector, MetricSummary, get_metrics_collector, timer


class TestMetricsCollector:
    """Test suite for MetricsCollector."""

    def test_counters_accumulate(self):
        """Test counters add up and unknown counters read zero."""
        metrics = MetricsCollector()
        metrics.increment_counter("pages.fetched")
        metrics.increment_counter("pages.fetched", 2)
        assert metrics.get_counter_value("pages.fetched") == 3
        assert metrics.get_counter_value("pages.failed") == 0

    def test_gauges_overwrite(self):
        """Test gauges keep the latest value."""
        metrics = MetricsCollector()
        metrics.set_gauge("jobs.running", 2)
        metrics.set_gauge("jobs.running", 1)
        assert metrics.get_gauge_value("jobs.running") == 1

    def test_timer_records_duration_and_count(self):
        """Test the timer context manager records a timing."""
        metrics = MetricsCollector()
        with metrics.timer("fetch.page"):
            pass
        summary = metrics.get_metric_summary("fetch.page.duration")
        assert summary.count == 1
        assert summary.min >= 0
        assert metrics.get_counter_value("fetch.page.count") == 1

    def test_timer_records_on_exception(self):
        """Test a timing is recorded even when the block raises."""
        metrics = MetricsCollector()
        with pytest.raises(RuntimeError):
            with metrics.timer("assets.download"):
                raise RuntimeError("boom")
        assert metrics.get_counter_value("assets.download.count") == 1

    def test_values_bounded(self):
        """Test the per-metric history is capped."""
        metrics = MetricsCollector(max_values_per_metric=3)
        for value in range(10):
            metrics.record_metric("sample", value)
        summary = metrics.get_metric_summary("sample")
        assert summary.count == 3
        assert summary.latest == 9
        assert summary.min == 7

    def test_summary_of_unknown_metric(self):
        """Test summary of a metric never recorded is None."""
        assert MetricsCollector().get_metric_summary("nothing") is None
        assert MetricSummary.from_values("empty", []).count == 0

    def test_business_metrics_hit_rate(self):
        """Test cache hit rate is derived from hits and misses."""
        metrics = MetricsCollector()
        metrics.increment_counter("cache.hits", 3)
        metrics.increment_counter("cache.misses", 1)
        business = metrics.get_business_metrics()
        assert business["cache_hits"] == 3
        assert business["cache_hit_rate"] == 0.75

    def test_export_formats(self):
        """Test dict, json and prometheus exports."""
        metrics = MetricsCollector()
        metrics.increment_counter("pages.fetched", 5)
        with metrics.timer("fetch.page"):
            pass

        exported = metrics.export_metrics(include_system=False)
        assert exported["business"]["pages_fetched"] == 5
        assert exported["performance"]["fetch.page"]["count"] == 1
        assert "system" not in exported

        as_json = json.loads(metrics.export_metrics(format="json", include_system=False))
        assert as_json["business"]["pages_fetched"] == 5

        prometheus = metrics.export_metrics(format="prometheus", include_system=False)
        assert "sitemirror_pages_fetched 5.0" in prometheus

        with pytest.raises(ValueError):
            metrics.export_metrics(format="xml")

    def test_system_metrics(self):
        """Test psutil-backed process metrics are reported."""
        system = MetricsCollector().get_system_metrics()
        assert "uptime_seconds" in system
        assert "timestamp" in system

    def test_reset(self):
        """Test reset drops everything."""
        metrics = MetricsCollector()
        metrics.increment_counter("pages.fetched")
        metrics.set_gauge("jobs.running", 1)
        metrics.reset()
        assert metrics.get_counter_value("pages.fetched") == 0
        assert metrics.get_gauge_value("jobs.running") == 0
        assert metrics.get_metric_summary("pages.fetched") is None


class TestGlobalMetrics:
    """Test suite for module-level helpers."""

    def test_module_timer_uses_global_collector(self):
        """Test the module timer records on the global collector."""
        with timer("cache.revalidate"):
            pass
        assert get_metrics_collector().get_counter_value("cache.revalidate.count") == 1
