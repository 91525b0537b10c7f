"""
Metrics collection for RiftSettle.

Thread-safe counters, gauges and histograms with optional labels,
exported as a dict (for /health detail) or in Prometheus text format
(for /metrics).

Settlement metrics:
- claims_total{status}: claim attempts by outcome
- claim_amount_sol: histogram of settled claim amounts
- earnings_recorded_total: Earning rows written by record-earnings runs
- distribution_transfers_total{status}: legacy direct-pay transfers
- audit_retry_queue_depth: parked treasury audit rows
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

METRIC_PREFIX = "riftsettle"

# Latency buckets in milliseconds
LATENCY_BUCKETS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)

# Amount buckets in SOL
SOL_BUCKETS = (0.001, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 50, 100)


@dataclass
class HistogramBucket:
    le: float  # Less than or equal to
    count: int = 0


@dataclass
class Histogram:
    """Cumulative-bucket histogram."""

    name: str
    bounds: tuple[float, ...] = LATENCY_BUCKETS
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in self.bounds]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Collects counters, gauges, and histograms with optional labels.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

        self.increment("app_start_total")

    def _labels_key(self, labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def increment_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] += value

    def decrement_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] -= value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histograms

    def observe(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
        bounds: tuple[float, ...] = LATENCY_BUCKETS,
    ) -> None:
        """Record an observation; ``bounds`` applies when the series is first created."""
        with self._lock:
            key = self._labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name, bounds=bounds)
            self._histograms[name][key].observe(value)

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        self.observe(name, value_ms, labels)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Context manager for timing code blocks."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Settlement helpers

    def record_claim(self, status: str, amount: float | None = None) -> None:
        self.increment("claims_total", labels={"status": status})
        if amount is not None:
            self.observe("claim_amount_sol", amount, bounds=SOL_BUCKETS)

    def record_earnings(self, count: int) -> None:
        if count:
            self.increment("earnings_recorded_total", count)

    def record_distribution_transfer(self, status: str) -> None:
        self.increment("distribution_transfers_total", labels={"status": status})

    # Export

    @staticmethod
    def _flatten(values: dict[str, Any]) -> Any:
        if len(values) == 1 and "" in values:
            return values[""]
        return dict(values)

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {n: self._flatten(v) for n, v in self._counters.items()},
                "gauges": {n: self._flatten(v) for n, v in self._gauges.items()},
                "histograms": {
                    name: {
                        (key or "_total"): {
                            "count": hist.count,
                            "sum": hist.sum,
                            "avg": hist.sum / hist.count if hist.count else 0,
                            "buckets": {str(b.le): b.count for b in hist.buckets},
                        }
                        for key, hist in series.items()
                    }
                    for name, series in self._histograms.items()
                },
            }

    @staticmethod
    def _series(metric_name: str, key: str, extra: str = "") -> str:
        labels = ",".join(part for part in (key, extra) if part)
        return f"{metric_name}{{{labels}}}" if labels else metric_name

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        with self._lock:
            uptime_name = f"{METRIC_PREFIX}_uptime_seconds"
            lines += [
                f"# HELP {uptime_name} Time since application start",
                f"# TYPE {uptime_name} gauge",
                f"{uptime_name} {time.time() - self._start_time:.2f}",
                "",
            ]

            for kind, store in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in store.items():
                    metric_name = f"{METRIC_PREFIX}_{name}"
                    lines.append(f"# TYPE {metric_name} {kind}")
                    for key, value in values.items():
                        lines.append(f"{self._series(metric_name, key)} {value}")
                    lines.append("")

            for name, series in self._histograms.items():
                metric_name = f"{METRIC_PREFIX}_{name}"
                lines.append(f"# TYPE {metric_name} histogram")
                for key, hist in series.items():
                    for bucket in hist.buckets:
                        le = "+Inf" if bucket.le == float("inf") else bucket.le
                        le_label = f'le="{le}"'
                        series_name = self._series(f"{metric_name}_bucket", key, le_label)
                        lines.append(f"{series_name} {bucket.count}")
                    lines.append(f"{self._series(metric_name + '_sum', key)} {hist.sum:.6f}")
                    lines.append(f"{self._series(metric_name + '_count', key)} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
