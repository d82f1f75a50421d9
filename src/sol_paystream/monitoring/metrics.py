"""Process-wide metrics for the reconcile, watch and fan-out pipeline."""

from __future__ import annotations

import math
import re
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from statistics import mean
from typing import Deque, Dict, Iterable, Iterator, List, MutableMapping

_METRIC_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_:]")

# Help text for the Prometheus endpoint; other names export without HELP.
METRIC_HELP: Dict[str, str] = {
    "reconcile.calls": "Reconcile calls started",
    "reconcile.failures": "Reconcile calls that raised",
    "reconcile.ingested": "Payments persisted for the first time",
    "reconcile.duplicates": "Payments already present in the store",
    "reconcile.fetch_failures": "Transaction bodies skipped after a ledger error",
    "reconcile.persist_failures": "Payments that could not be written",
    "reconcile.latency_ms": "Reconcile wall time in milliseconds",
    "watcher.ticks": "Change-detection ticks",
    "watcher.poll_failures": "Address polls that failed",
    "watcher.skipped_in_flight": "Polls skipped while the previous one ran",
    "watcher.addresses": "Addresses under change detection",
    "publisher.delivered": "Events queued to subscribers",
    "publisher.dropped": "Subscribers dropped as disconnected or slow",
    "publisher.topics": "Topics with at least one subscriber",
    "webhooks.delivered": "Webhook deliveries acknowledged",
    "webhooks.failed": "Webhook deliveries abandoned after retries",
}


def _sanitize_metric_name(name: str) -> str:
    sanitized = _METRIC_SANITIZE_RE.sub("_", name)
    if not sanitized:
        return "_"
    if sanitized[0].isdigit():
        sanitized = f"_{sanitized}"
    return sanitized


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


class MetricsRegistry:
    """Thread-safe counters, gauges and sample windows.

    Store calls run in worker threads, so every mutation takes the lock.
    """

    def __init__(self, *, max_hist_samples: int = 1024) -> None:
        self._lock = threading.RLock()
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._gauges: MutableMapping[str, float] = {}
        self._histograms: MutableMapping[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_hist_samples)
        )

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms[name].append(float(value))

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record the wall time of the block, in milliseconds, under ``name``."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - started) * 1000)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histograms = {key: self._histogram_stats(values) for key, values in self._histograms.items()}
        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def pipeline_summary(self) -> Dict[str, float]:
        """Derived health figures for the dashboard."""

        with self._lock:
            counters = dict(self._counters)
        calls = counters.get("reconcile.calls", 0.0)
        ingested = counters.get("reconcile.ingested", 0.0)
        duplicates = counters.get("reconcile.duplicates", 0.0)
        polls = counters.get("watcher.poll_failures", 0.0)
        webhooks = counters.get("webhooks.delivered", 0.0) + counters.get("webhooks.failed", 0.0)
        return {
            "reconcileSuccessRate": round(1.0 - _ratio(counters.get("reconcile.failures", 0.0), calls), 4)
            if calls
            else 1.0,
            "duplicateRatio": round(_ratio(duplicates, ingested + duplicates), 4),
            "pollFailures": polls,
            "subscribersDropped": counters.get("publisher.dropped", 0.0),
            "webhookFailureRate": round(_ratio(counters.get("webhooks.failed", 0.0), webhooks), 4),
        }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines: List[str] = []

        def header(name: str, sanitized: str, kind: str) -> None:
            if name in METRIC_HELP:
                lines.append(f"# HELP {sanitized} {METRIC_HELP[name]}")
            lines.append(f"# TYPE {sanitized} {kind}")

        for name, value in snap["counters"].items():
            sanitized = _sanitize_metric_name(name)
            header(name, sanitized, "counter")
            lines.append(f"{sanitized} {value}")
        for name, value in snap["gauges"].items():
            sanitized = _sanitize_metric_name(name)
            header(name, sanitized, "gauge")
            lines.append(f"{sanitized} {value}")
        for name, stats in snap["histograms"].items():
            if not stats:
                continue
            base = _sanitize_metric_name(name)
            header(name, base, "summary")
            for quantile in ("p50", "p90", "p99"):
                lines.append(f"{base}{{quantile=\"{quantile}\"}} {stats[quantile]}")
            lines.append(f"{base}_count {stats['count']}")
            lines.append(f"{base}_avg {stats['avg']}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def _histogram_stats(self, values: Iterable[float]) -> Dict[str, float]:
        data = sorted(values)
        if not data:
            return {}
        return {
            "count": float(len(data)),
            "avg": mean(data),
            "p50": self._percentile(data, 0.5),
            "p90": self._percentile(data, 0.9),
            "p99": self._percentile(data, 0.99),
        }

    def _percentile(self, data: List[float], percentile: float) -> float:
        index = max(int(math.ceil(percentile * len(data))) - 1, 0)
        return float(data[min(index, len(data) - 1)])


METRICS = MetricsRegistry()


__all__ = ["METRICS", "METRIC_HELP", "MetricsRegistry"]
