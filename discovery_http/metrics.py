"""Metrics sinks for the connection cleaner.

The reaper takes a sink by injection instead of registering itself in a
global registry. Two sinks ship with the package:

- ``InMemoryMetrics``: thread-safe counters and timings, the default
- ``PrometheusMetrics``: counters and histograms on a ``CollectorRegistry``
"""

from __future__ import annotations

import re
import threading
from collections import defaultdict
from typing import Protocol, runtime_checkable

from prometheus_client import CollectorRegistry, Counter, Histogram

CLEANER_TIMER = "discovery_http_connection_cleaner_time"
CLEANER_FAILURES = "discovery_http_connection_cleaner_failure"


@runtime_checkable
class MetricsSink(Protocol):
    """Counter + timer interface consumed by the idle connection reaper."""

    def increment(self, name: str, value: int = 1) -> None: ...

    def record_time(self, name: str, seconds: float) -> None: ...


class InMemoryMetrics:
    """Process-local metrics store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._timings: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def record_time(self, name: str, seconds: float) -> None:
        with self._lock:
            self._timings[name].append(seconds)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def timings(self, name: str) -> list[float]:
        with self._lock:
            return list(self._timings.get(name, ()))


class PrometheusMetrics:
    """Prometheus-backed sink.

    Metrics are created lazily per name, labelled with ``client``. Pass a
    dedicated ``CollectorRegistry`` to keep clients isolated from the
    process-wide default registry.
    """

    def __init__(
        self,
        client_name: str,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._client_name = client_name
        self._registry = registry if registry is not None else CollectorRegistry()
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                counter = Counter(
                    _metric_name(name),
                    f"{name} count",
                    ["client"],
                    registry=self._registry,
                )
                self._counters[name] = counter
        counter.labels(client=self._client_name).inc(value)

    def record_time(self, name: str, seconds: float) -> None:
        with self._lock:
            histogram = self._histograms.get(name)
            if histogram is None:
                histogram = Histogram(
                    _metric_name(name) + "_seconds",
                    f"{name} duration in seconds",
                    ["client"],
                    registry=self._registry,
                )
                self._histograms[name] = histogram
        histogram.labels(client=self._client_name).observe(seconds)


def _metric_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)
