"""
Prometheus Metrics

Lightweight in-process metric primitives with Prometheus text output:
- Counter / Gauge / Histogram keyed by label tuples
- Summary with a bounded sample window for p50/p95/p99
- MetricsRegistry to group metrics and render them together
"""

from typing import Dict, Iterable, List, Optional, Sequence
import math
import time
from collections import defaultdict, deque
from threading import Lock


def _key(labels: tuple, label_values: dict) -> tuple:
    return tuple(str(label_values.get(l, '')) for l in labels)


class Counter:
    """Simple counter metric."""

    metric_type = "counter"

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, **label_values):
        """Increment counter."""
        key = _key(self.labels, label_values)
        with self._lock:
            self._values[key] += value

    def get(self, **label_values) -> float:
        with self._lock:
            return self._values.get(_key(self.labels, label_values), 0.0)

    def get_all(self) -> Dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return dict(self._values)


class Gauge:
    """Simple gauge metric (can go up and down)."""

    metric_type = "gauge"

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def set(self, value: float, **label_values):
        """Set gauge value."""
        key = _key(self.labels, label_values)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1, **label_values):
        key = _key(self.labels, label_values)
        with self._lock:
            self._values[key] += value

    def dec(self, value: float = 1, **label_values):
        key = _key(self.labels, label_values)
        with self._lock:
            self._values[key] -= value

    def get(self, **label_values) -> float:
        with self._lock:
            return self._values.get(_key(self.labels, label_values), 0.0)

    def get_all(self) -> Dict[tuple, float]:
        with self._lock:
            return dict(self._values)


class Histogram:
    """Simple histogram metric."""

    metric_type = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))

    def __init__(self, name: str, description: str, labels: tuple = (), buckets: tuple = None):
        self.name = name
        self.description = description
        self.labels = labels
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[tuple, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, **label_values):
        """Record an observation."""
        key = _key(self.labels, label_values)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def time(self, **label_values):
        """Context manager to time a block of code."""
        return _HistogramTimer(self, label_values)

    def get_all(self) -> Dict:
        with self._lock:
            return {
                'counts': {k: dict(v) for k, v in self._counts.items()},
                'sums': dict(self._sums),
                'totals': dict(self._totals)
            }


class Summary:
    """Sliding-window summary reporting quantiles over the last N samples."""

    metric_type = "summary"
    QUANTILES = (0.5, 0.95, 0.99)

    def __init__(self, name: str, description: str, labels: tuple = (), window: int = 1000):
        self.name = name
        self.description = description
        self.labels = labels
        self.window = window
        self._samples: Dict[tuple, deque] = {}
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, **label_values):
        key = _key(self.labels, label_values)
        with self._lock:
            samples = self._samples.setdefault(key, deque(maxlen=self.window))
            samples.append(value)
            self._sums[key] += value
            self._totals[key] += 1

    def quantiles(self, **label_values) -> Dict[str, Optional[float]]:
        """p50/p95/p99 over the window for one label set"""
        with self._lock:
            samples = list(self._samples.get(_key(self.labels, label_values), ()))
        return {f"p{int(q * 100)}": percentile(samples, q) for q in self.QUANTILES}

    def get_all(self) -> Dict:
        with self._lock:
            keys = list(self._samples.keys())
            data = {
                'sums': dict(self._sums),
                'totals': dict(self._totals),
                'samples': {k: list(v) for k, v in self._samples.items()},
            }
        data['quantiles'] = {
            k: {q: percentile(data['samples'][k], q) for q in self.QUANTILES} for k in keys
        }
        return data


def percentile(samples: Sequence[float], q: float) -> Optional[float]:
    """Nearest-rank percentile; None for an empty sample"""
    if not samples:
        return None
    ordered = sorted(samples)
    rank = max(1, math.ceil(q * len(ordered)))
    return ordered[rank - 1]


class _HistogramTimer:
    """Context manager for timing code blocks."""

    def __init__(self, histogram: Histogram, label_values: dict):
        self.histogram = histogram
        self.label_values = label_values
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self.start_time
        self.histogram.observe(duration, **self.label_values)


class MetricsRegistry:
    """Named collection of metrics rendered together."""

    def __init__(self):
        self._metrics: List = []

    def register(self, metric):
        self._metrics.append(metric)
        return metric

    def counter(self, name: str, description: str, labels: tuple = ()) -> Counter:
        return self.register(Counter(name, description, labels))

    def gauge(self, name: str, description: str, labels: tuple = ()) -> Gauge:
        return self.register(Gauge(name, description, labels))

    def histogram(self, name: str, description: str, labels: tuple = (), buckets: tuple = None) -> Histogram:
        return self.register(Histogram(name, description, labels, buckets))

    def summary(self, name: str, description: str, labels: tuple = (), window: int = 1000) -> Summary:
        return self.register(Summary(name, description, labels, window))

    def __iter__(self) -> Iterable:
        return iter(self._metrics)


def _label_str(names: tuple, values: tuple, extra: Optional[Dict[str, str]] = None) -> str:
    pairs = list(zip(names, values))
    if extra:
        pairs.extend(extra.items())
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


def format_prometheus_metrics(*registries: MetricsRegistry) -> str:
    """Format all metrics in Prometheus text format."""
    lines = []
    for registry in registries:
        for metric in registry:
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type}")

            if isinstance(metric, (Counter, Gauge)):
                for key, value in metric.get_all().items():
                    lines.append(f"{metric.name}{_label_str(metric.labels, key)} {value}")

            elif isinstance(metric, Histogram):
                data = metric.get_all()
                for key, total in data['totals'].items():
                    counts = data['counts'].get(key, {})
                    for bucket in metric.buckets:
                        le = "+Inf" if bucket == float('inf') else str(bucket)
                        lines.append(
                            f"{metric.name}_bucket{_label_str(metric.labels, key, {'le': le})} {counts.get(bucket, 0)}"
                        )
                    lines.append(f"{metric.name}_sum{_label_str(metric.labels, key)} {data['sums'][key]}")
                    lines.append(f"{metric.name}_count{_label_str(metric.labels, key)} {total}")

            elif isinstance(metric, Summary):
                data = metric.get_all()
                for key, total in data['totals'].items():
                    for q, value in data['quantiles'].get(key, {}).items():
                        if value is not None:
                            lines.append(
                                f"{metric.name}{_label_str(metric.labels, key, {'quantile': str(q)})} {value}"
                            )
                    lines.append(f"{metric.name}_sum{_label_str(metric.labels, key)} {data['sums'][key]}")
                    lines.append(f"{metric.name}_count{_label_str(metric.labels, key)} {total}")

    return "\n".join(lines) + "\n"


# ================================
# HTTP METRICS
# ================================

http_metrics = MetricsRegistry()

http_requests_total = http_metrics.counter(
    "http_requests_total",
    "Total HTTP requests",
    labels=("method", "path", "status_code")
)

http_request_duration_seconds = http_metrics.histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labels=("method", "path")
)


def record_http_request(method: str, path: str, status_code: int, duration: float):
    """Record an HTTP request."""
    http_requests_total.inc(method=method, path=path, status_code=str(status_code))
    http_request_duration_seconds.observe(duration, method=method, path=path)
