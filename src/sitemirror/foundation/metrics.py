"""Metrics collection for the sitemirror engine."""

import json
import os
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Union

import psutil

from .logging import get_logger


@dataclass
class MetricValue:
    """Individual metric value with timestamp."""
    value: float
    timestamp: datetime = field(default_factory=datetime.utcnow)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Summary statistics for a metric."""
    name: str
    count: int
    sum: float
    min: float
    max: float
    avg: float
    latest: float

    @classmethod
    def from_values(cls, name: str, values: List[MetricValue]) -> "MetricSummary":
        """Create summary from list of metric values."""
        if not values:
            return cls(name=name, count=0, sum=0.0, min=0.0, max=0.0, avg=0.0, latest=0.0)

        numeric_values = [v.value for v in values]
        return cls(
            name=name,
            count=len(values),
            sum=sum(numeric_values),
            min=min(numeric_values),
            max=max(numeric_values),
            avg=sum(numeric_values) / len(numeric_values),
            latest=values[-1].value,
        )


class MetricsCollector:
    """Collects counters, gauges and timings for crawl operations."""

    TIMED_OPERATIONS = (
        "fetch.page",
        "assets.download",
        "cache.revalidate",
        "queue.lease",
        "verification.score",
    )

    def __init__(self, max_values_per_metric: int = 1000):
        self.logger = get_logger(__name__)
        self.max_values_per_metric = max_values_per_metric

        self._metrics: Dict[str, Deque[MetricValue]] = defaultdict(
            lambda: deque(maxlen=self.max_values_per_metric)
        )
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = defaultdict(float)

        self._lock = Lock()
        self._start_time = datetime.utcnow()

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Record a metric value."""
        metric_value = MetricValue(value=value, tags=tags or {})
        with self._lock:
            self._metrics[name].append(metric_value)

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Increment a counter metric.

        Args:
            name: Counter name
            value: Value to add (default: 1.0)
            tags: Optional tags
        """
        with self._lock:
            self._counters[name] += value
            current = self._counters[name]
        self.record_metric(name, current, tags)

    def set_gauge(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Set a gauge metric value."""
        with self._lock:
            self._gauges[name] = value
        self.record_metric(name, value, tags)

    def record_timing(
        self,
        name: str,
        duration: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Record a timing metric in seconds."""
        self.record_metric(f"{name}.duration", duration, tags)
        self.increment_counter(f"{name}.count", tags=tags)

    @contextmanager
    def timer(self, name: str, tags: Optional[Dict[str, str]] = None):
        """Context manager for timing operations.

        Usage:
            with metrics.timer("fetch.page"):
                ...
        """
        start_time = time.monotonic()
        try:
            yield
        finally:
            self.record_timing(name, time.monotonic() - start_time, tags)

    def get_metric_summary(self, name: str) -> Optional[MetricSummary]:
        """Get summary statistics for a metric, or None if never recorded."""
        with self._lock:
            if name not in self._metrics:
                return None
            values = list(self._metrics[name])
        return MetricSummary.from_values(name, values)

    def get_counter_value(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def get_gauge_value(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def get_system_metrics(self) -> Dict[str, Any]:
        """Get process and host metrics via psutil."""
        current_time = datetime.utcnow()
        uptime = current_time - self._start_time

        try:
            process = psutil.Process(os.getpid())
            system_metrics = {
                "uptime_seconds": uptime.total_seconds(),
                "memory_usage_mb": process.memory_info().rss / 1024 / 1024,
                "cpu_percent": process.cpu_percent(),
                "threads": process.num_threads(),
                "system_memory_percent": psutil.virtual_memory().percent,
                "system_cpu_percent": psutil.cpu_percent(),
                "system_disk_percent": psutil.disk_usage('/').percent,
                "timestamp": current_time.isoformat(),
            }
        except psutil.Error as e:
            self.logger.warning(f"Failed to collect system metrics: {e}")
            system_metrics = {
                "uptime_seconds": uptime.total_seconds(),
                "timestamp": current_time.isoformat(),
                "error": str(e)
            }

        return system_metrics

    def get_business_metrics(self) -> Dict[str, Any]:
        """Get mirror-level counters."""
        business_metrics = {
            "pages_fetched": self.get_counter_value("pages.fetched"),
            "pages_cached": self.get_counter_value("pages.cached"),
            "pages_failed": self.get_counter_value("pages.failed"),
            "assets_stored": self.get_counter_value("assets.stored"),
            "assets_deduplicated": self.get_counter_value("assets.deduplicated"),
            "cache_hits": self.get_counter_value("cache.hits"),
            "cache_misses": self.get_counter_value("cache.misses"),
            "proxy_failures": self.get_counter_value("proxy.failures"),
            "challenges_bypassed": self.get_counter_value("challenge.bypassed"),
            "challenges_blocked": self.get_counter_value("challenge.blocked"),
            "jobs_completed": self.get_counter_value("jobs.completed"),
            "jobs_failed": self.get_counter_value("jobs.failed"),
            "jobs_running": self.get_gauge_value("jobs.running"),
        }

        cache_requests = business_metrics["cache_hits"] + business_metrics["cache_misses"]
        if cache_requests > 0:
            business_metrics["cache_hit_rate"] = business_metrics["cache_hits"] / cache_requests

        return business_metrics

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Get timing summaries for the main operations."""
        performance_metrics = {}
        for operation in self.TIMED_OPERATIONS:
            summary = self.get_metric_summary(f"{operation}.duration")
            if summary and summary.count > 0:
                performance_metrics[operation] = {
                    "avg_ms": summary.avg * 1000,
                    "min_ms": summary.min * 1000,
                    "max_ms": summary.max * 1000,
                    "count": summary.count,
                }
        return performance_metrics

    def export_metrics(self, format: str = "dict", include_system: bool = True) -> Union[Dict[str, Any], str]:
        """Export all metrics.

        Args:
            format: Export format ('dict', 'json', 'prometheus')
            include_system: Include psutil process metrics

        Returns:
            Metrics in specified format
        """
        metrics: Dict[str, Any] = {"timestamp": datetime.utcnow().isoformat()}
        if include_system:
            metrics["system"] = self.get_system_metrics()
        metrics["business"] = self.get_business_metrics()
        metrics["performance"] = self.get_performance_metrics()

        if format == "dict":
            return metrics
        if format == "json":
            return json.dumps(metrics, indent=2, default=str)
        if format == "prometheus":
            return self._export_prometheus_format(metrics)
        raise ValueError(f"Unsupported format: {format}")

    def _export_prometheus_format(self, metrics: Dict[str, Any]) -> str:
        lines = []
        for section in ("system", "business"):
            for key, value in metrics.get(section, {}).items():
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    lines.append(f"sitemirror_{key} {value}")
        return "\n".join(lines)

    def reset(self) -> None:
        """Drop all recorded values."""
        with self._lock:
            self._metrics.clear()
            self._counters.clear()
            self._gauges.clear()


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def increment_counter(name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None) -> None:
    """Increment a counter."""
    get_metrics_collector().increment_counter(name, value, tags)


def set_gauge(name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
    """Set a gauge value."""
    get_metrics_collector().set_gauge(name, value, tags)


def timer(name: str, tags: Optional[Dict[str, str]] = None):
    """Context manager for timing operations."""
    return get_metrics_collector().timer(name, tags)
