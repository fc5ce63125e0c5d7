# max_express_bot/infra/metrics.py
"""
In-process metrics for the bot, served as JSON on /metrics.

Metric set (counter unless noted):
    updates_received_total{kind}             normalized updates by event kind
    updates_dropped_total{reason}            unsupported / malformed updates
    state_transitions_total{from_state,to_state}
    store_unavailable_total{operation}       load/save/delete fell back
    database_errors_total{operation}
    replies_total{status}                    sent / failed
    client_registrations_total{status}       ok / failed
    telegram_*                               Bot API calls, polling, webhook
    update_processing_seconds{event}         histogram, last HISTOGRAM_WINDOW samples

Keys are rendered as ``name{k=v,...}`` with labels sorted by name, so the
same label set always lands on the same key.
"""
from __future__ import annotations
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator
from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

# The process runs for weeks; keep only recent samples per histogram
HISTOGRAM_WINDOW = 1024


class Histogram:
    """Rolling window of observed values"""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self.values: deque[float] = deque(maxlen=window)
        self.total_count = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        window = len(sorted_values)

        def percentile(p: float) -> float:
            return sorted_values[min(int(window * p), window - 1)]

        return {
            "count": self.total_count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / window,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Thread-safe registry of counters and histograms.

    Counters are plain ints keyed by rendered name; histograms keep a
    rolling window. ``get_metrics`` returns a snapshot including uptime.
    """

    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()
        self._started = time.monotonic()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "uptime_seconds": round(time.monotonic() - self._started, 1),
            "counters": counters,
            "histograms": histograms,
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
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


class AppMetrics:
    """Named metrics of the conversation engine"""

    @staticmethod
    def update_received(kind: str) -> None:
        inc_counter("updates_received_total", kind=kind)

    @staticmethod
    def update_dropped(reason: str) -> None:
        inc_counter("updates_dropped_total", reason=reason)

    @staticmethod
    def transition(from_state: str, to_state: str) -> None:
        inc_counter("state_transitions_total", from_state=from_state, to_state=to_state)

    @staticmethod
    def store_unavailable(operation: str) -> None:
        inc_counter("store_unavailable_total", operation=operation)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def reply_delivered(status: str) -> None:
        inc_counter("replies_total", status=status)

    @staticmethod
    def client_registration(status: str) -> None:
        inc_counter("client_registrations_total", status=status)

    @staticmethod
    @contextmanager
    def track_processing_time(event_kind: str) -> Iterator[None]:
        """Observe how long handling one update took, errors included"""
        start = time.monotonic()
        try:
            yield
        finally:
            observe_histogram("update_processing_seconds", time.monotonic() - start, event=event_kind)
