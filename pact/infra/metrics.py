# pact/infra/metrics.py
"""
In-process counters and latency histograms, served as JSON at ``/metrics``.

Keys are ``name{label=value,...}`` with labels sorted, e.g.
``claims_total{outcome=lost}``.  Values live per process; sum across
instances at the scraper.
"""
from __future__ import annotations

import time
from collections import deque
from threading import Lock

from pact.infra.logging_config import get_logger

logger = get_logger(__name__)

# Histograms keep a sliding window so a long-lived worker does not grow without bound
HISTOGRAM_WINDOW = 2048


class Histogram:
    """Recent observations of one series (latency in seconds)"""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self.count = 0
        self.total = 0.0
        self._recent: deque[float] = deque(maxlen=window)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self._recent.append(value)

    def get_stats(self) -> dict:
        if not self._recent:
            return {"count": 0, "sum": 0.0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        ordered = sorted(self._recent)
        last = len(ordered) - 1
        return {
            "count": self.count,
            "sum": self.total,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / len(ordered),
            "p95": ordered[min(int(len(ordered) * 0.95), last)],
            "p99": ordered[min(int(len(ordered) * 0.99), last)],
        }


class MetricsCollector:
    def __init__(self):
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            histogram = self._histograms.get(key)
            if histogram is None:
                histogram = self._histograms[key] = Histogram()
            histogram.observe(value)

    def get_counter(self, name: str, **labels) -> int:
        """Current value of one counter series (0 if never incremented)"""
        key = self._make_key(name, labels or None)
        with self._lock:
            return self._counters.get(key, 0)

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: h.get_stats() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{rendered}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Record the duration of a ``with`` block, including blocks that raise."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started: float | None = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self._started, **self.labels)

class AppMetrics:
    """Dispatch workflow metrics"""

    @staticmethod
    def sites_dispatched(mode: str, count: int = 1) -> None:
        inc_counter("sites_dispatched_total", count, mode=mode)

    @staticmethod
    def dispatch_rejected(code: str) -> None:
        inc_counter("dispatch_rejected_total", code=code)

    @staticmethod
    def claim_won() -> None:
        inc_counter("claims_total", outcome="won")

    @staticmethod
    def claim_lost() -> None:
        inc_counter("claims_total", outcome="lost")

    @staticmethod
    def transition(to_status: str) -> None:
        inc_counter("site_transitions_total", to=to_status)

    @staticmethod
    def settlement_credited() -> None:
        inc_counter("settlements_total", outcome="credited")

    @staticmethod
    def settlement_failed() -> None:
        inc_counter("settlements_total", outcome="failed")

    @staticmethod
    def event_publish_failed(event: str) -> None:
        inc_counter("event_publish_failures_total", event=event)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_operation_time(operation: str) -> Timer:
        return Timer("operation_seconds", operation=operation)
