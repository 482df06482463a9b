"""In-process metrics for sessions, transactions and runner calls.

Every duration the data layer measures lands in one place: a running
aggregate (count, max, Welford mean and variance), an optional bucketed
histogram and the metadata of the most recent run. Counters track session
and transaction lifecycle events. One lock guards the registry because
owned sessions are opened from many caller threads.
"""

from __future__ import annotations

import threading
from bisect import bisect_left
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from math import sqrt
from time import perf_counter
from typing import Any, Dict, Iterator, List, Mapping, Sequence

from plugindb.core.config import settings as _settings


@dataclass(slots=True)
class DurationStats:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    mean_ms: float = 0.0
    m2: float = 0.0

    def add(self, elapsed_ms: float) -> None:
        self.count += 1
        self.total_ms += elapsed_ms
        self.max_ms = max(self.max_ms, elapsed_ms)
        delta = elapsed_ms - self.mean_ms
        self.mean_ms += delta / self.count
        self.m2 += delta * (elapsed_ms - self.mean_ms)

    def as_dict(self) -> Dict[str, float]:
        variance = self.m2 / (self.count - 1) if self.count > 1 else 0.0
        return {
            "count": float(self.count),
            "total_ms": self.total_ms,
            "max_ms": self.max_ms,
            "avg_ms": self.mean_ms,
            "variance_ms": variance,
            "stddev_ms": sqrt(variance),
        }


@dataclass(slots=True)
class Histogram:
    """Non-cumulative bucket counts; values above the last bound go to ``+Inf``."""

    bounds: tuple[float, ...]
    counts: List[float] = field(init=False)

    def __post_init__(self) -> None:
        self.counts = [0.0] * (len(self.bounds) + 1)

    def add(self, value: float) -> None:
        self.counts[bisect_left(self.bounds, value)] += 1.0

    def as_dict(self) -> Dict[str, float]:
        keys = [str(bound) for bound in self.bounds] + ["+Inf"]
        return dict(zip(keys, self.counts))


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._durations: Dict[str, DurationStats] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._last_runs: Dict[str, Dict[str, Any]] = {}
        self._counters: Dict[str, float] = {}

    def record(
        self,
        label: str,
        elapsed_ms: float,
        *,
        buckets: Sequence[float] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Fold one measured duration into the aggregate, histogram and last run of ``label``."""

        elapsed_ms = float(elapsed_ms)
        last_run = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "duration_ms": elapsed_ms,
            **(metadata or {}),
        }
        with self._lock:
            self._durations.setdefault(label, DurationStats()).add(elapsed_ms)
            if buckets:
                histogram = self._histograms.get(label)
                if histogram is None:
                    histogram = self._histograms[label] = Histogram(tuple(sorted(buckets)))
                histogram.add(elapsed_ms)
            self._last_runs[label] = last_run

    def inc(self, label: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[label] = self._counters.get(label, 0.0) + float(amount)

    def durations(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {label: stats.as_dict() for label, stats in self._durations.items()}

    def histograms(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {label: histogram.as_dict() for label, histogram in self._histograms.items()}

    def last_runs(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {label: dict(payload) for label, payload in self._last_runs.items()}

    def counters(self, reset: bool = False) -> Dict[str, float]:
        with self._lock:
            data = dict(self._counters)
            if reset:
                self._counters.clear()
            return data

    def reset(self) -> None:
        with self._lock:
            self._durations.clear()
            self._histograms.clear()
            self._last_runs.clear()
            self._counters.clear()


metrics_registry = MetricsRegistry()

_INSTRUMENTATION_ENABLED: bool = bool(_settings.instrumentation_enabled)


def set_instrumentation_enabled(enabled: bool) -> None:
    global _INSTRUMENTATION_ENABLED
    _INSTRUMENTATION_ENABLED = bool(enabled)


def instrumentation_enabled() -> bool:
    return _INSTRUMENTATION_ENABLED


def record_duration(
    label: str,
    elapsed_ms: float,
    *,
    buckets: Sequence[float] | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    if instrumentation_enabled():
        metrics_registry.record(label, elapsed_ms, buckets=buckets, metadata=metadata)


@contextmanager
def timer(label: str, *, buckets: Sequence[float] | None = None) -> Iterator[None]:
    """Time the block and record it under ``label``, failures included."""

    if not instrumentation_enabled():
        yield
        return
    started = perf_counter()
    try:
        yield
    finally:
        metrics_registry.record(label, (perf_counter() - started) * 1000.0, buckets=buckets)


def inc_counter(label: str, amount: float = 1.0) -> None:
    if instrumentation_enabled():
        metrics_registry.inc(label, amount)


def get_counters(reset: bool = False) -> Dict[str, float]:
    return metrics_registry.counters(reset=reset)


def get_metrics() -> Dict[str, Dict[str, float]]:
    """Duration aggregates per label."""

    return metrics_registry.durations()


def get_histograms() -> Dict[str, Dict[str, float]]:
    return metrics_registry.histograms()


def get_last_runs() -> Dict[str, Dict[str, Any]]:
    return metrics_registry.last_runs()


__all__ = [
    "MetricsRegistry",
    "get_counters",
    "get_histograms",
    "get_last_runs",
    "get_metrics",
    "inc_counter",
    "instrumentation_enabled",
    "metrics_registry",
    "record_duration",
    "set_instrumentation_enabled",
    "timer",
]
