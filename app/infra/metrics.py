# app/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Samples kept per histogram; older observations roll off
HISTOGRAM_WINDOW = 1000


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Rolling distribution of recent values (latencies, candidate counts)"""
    values: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))
    total_count: int = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

        sorted_values = sorted(self.values)
        window = len(sorted_values)

        def percentile(p: float) -> float:
            idx = int(window * p)
            return sorted_values[min(idx, window - 1)]

        return {
            "count": self.total_count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / window,
            "p50": percentile(0.50),
            "p95": percentile(0.95),
        }


class MetricsCollector:
    """
    In-process metrics collection exposed at /metrics.
    Counters and histograms are keyed by name plus sorted labels.
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


# Convenience functions
def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


# Context manager for timing operations
class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            observe_histogram(self.metric_name, duration, **self.labels)



# Dispatch-specific metrics
class DispatchMetrics:
    """Dispatch engine metrics tracking"""

    @staticmethod
    def dispatch_attempt(outcome: str) -> None:
        inc_counter("dispatch_attempts_total", outcome=outcome)

    @staticmethod
    def auto_assigned() -> None:
        inc_counter("auto_assignments_total")

    @staticmethod
    def reassigned(kind: str) -> None:
        inc_counter("reassignments_total", kind=kind)

    @staticmethod
    def stale_state(operation: str) -> None:
        inc_counter("stale_state_conflicts_total", operation=operation)

    @staticmethod
    def candidates_matched(count: int) -> None:
        observe_histogram("match_candidates", float(count))

    @staticmethod
    def sla_breach(breach_type: str, level: str) -> None:
        inc_counter("sla_breaches_total", breach_type=breach_type, level=level)

    @staticmethod
    def sla_escalated(level: str) -> None:
        inc_counter("sla_escalations_total", level=level)

    @staticmethod
    def sla_sweep_skipped() -> None:
        inc_counter("sla_sweeps_skipped_total")

    @staticmethod
    def notification_sent(channel: str) -> None:
        inc_counter("notifications_sent_total", channel=channel)

    @staticmethod
    def notification_failed(channel: str) -> None:
        inc_counter("notification_failures_total", channel=channel)

    @staticmethod
    def notification_dropped(channel: str) -> None:
        inc_counter("notifications_dropped_total", channel=channel)

    @staticmethod
    def audit_write_failed() -> None:
        inc_counter("audit_write_failures_total")

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_matching_time() -> Timer:
        return Timer("matching_seconds")

    @staticmethod
    def track_sweep_time() -> Timer:
        return Timer("sla_sweep_seconds")
