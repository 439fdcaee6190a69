"""Minimal metric primitives (histograms, gauges, registry) and bucket helpers."""

from __future__ import annotations

import bisect
import threading
from datetime import timedelta

DEF_BUCKETS: tuple[float, ...] = (
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _join_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


class _Metric:
    def __init__(
        self, name: str = "", help: str = "", namespace: str = "", subsystem: str = ""
    ) -> None:
        self.name = name
        self.help = help
        self.namespace = namespace
        self.subsystem = subsystem
        self._lock = threading.Lock()

    @property
    def full_name(self) -> str:
        """The fully qualified metric name."""
        return _join_name(self.namespace, self.subsystem, self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.full_name!r})"


class Histogram(_Metric):
    """A cumulative histogram of observed values."""

    def __init__(
        self,
        name: str = "",
        help: str = "",
        namespace: str = "",
        subsystem: str = "",
        buckets: list[float] | tuple[float, ...] | None = None,
    ) -> None:
        super().__init__(name, help, namespace, subsystem)
        self.buckets: tuple[float, ...] = tuple(DEF_BUCKETS if buckets is None else buckets)
        if list(self.buckets) != sorted(self.buckets):
            raise ValueError("histogram buckets must be sorted in increasing order")
        self._counts = [0] * (len(self.buckets) + 1)
        self.count = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        """Record one observation."""
        with self._lock:
            self._counts[bisect.bisect_left(self.buckets, value)] += 1
            self.count += 1
            self.sum += value

    @property
    def bucket_counts(self) -> tuple[int, ...]:
        """Cumulative counts for each bucket upper bound, ending with +Inf."""
        with self._lock:
            counts = list(self._counts)
        running = 0
        result = []
        for count in counts:
            running += count
            result.append(running)
        return tuple(result)


class Gauge(_Metric):
    """A value that can go up and down."""

    def __init__(
        self, name: str = "", help: str = "", namespace: str = "", subsystem: str = ""
    ) -> None:
        super().__init__(name, help, namespace, subsystem)
        self.value = 0.0

    def set(self, value: float) -> None:
        """Set the gauge to the given value."""
        with self._lock:
            self.value = float(value)


class GaugeVec(_Metric):
    """A family of gauges distinguished by label values."""

    def __init__(
        self,
        name: str = "",
        help: str = "",
        namespace: str = "",
        subsystem: str = "",
        label_names: list[str] | tuple[str, ...] = (),
    ) -> None:
        super().__init__(name, help, namespace, subsystem)
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], Gauge] = {}

    def with_label_values(self, *args: str) -> Gauge:
        """Return the gauge for the given label values, creating it if needed."""
        if len(args) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values, got {len(args)}"
            )
        key = tuple(args)
        with self._lock:
            gauge = self._children.get(key)
            if gauge is None:
                gauge = Gauge(self.name, self.help, self.namespace, self.subsystem)
                self._children[key] = gauge
            return gauge

    def reset(self) -> None:
        """Drop every child gauge."""
        with self._lock:
            self._children.clear()

    def collect(self) -> dict[tuple[str, ...], float]:
        """Return current values keyed by label values, in sorted order."""
        with self._lock:
            items = sorted(self._children.items())
        return {labels: gauge.value for labels, gauge in items}


class Registry:
    """A collection of uniquely named metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> None:
        """Register a metric; raises ValueError if its name is already taken."""
        with self._lock:
            name = metric.full_name
            if name in self._metrics:
                raise ValueError(f"duplicate metrics collector registration attempted: {name}")
            self._metrics[name] = metric

    def __contains__(self, name: object) -> bool:
        return name in self._metrics

    def __iter__(self):
        return iter(list(self._metrics.values()))

    def __len__(self) -> int:
        return len(self._metrics)


def buckets_for_scrape_duration(scrape_timeout: timedelta | float) -> list[float]:
    """Default histogram buckets extended with buckets around the scrape timeout."""
    buckets = list(DEF_BUCKETS)
    max_bucket = buckets[-1]
    timeout = _seconds(scrape_timeout)
    if timeout > max_bucket:
        halfway = max_bucket + (timeout - max_bucket) / 2
        buckets.extend([halfway, timeout, timeout * 1.5, timeout * 2.0])
    elif timeout < max_bucket:
        index = next(i for i, bucket in enumerate(buckets) if bucket > timeout)
        bucket = buckets[index]
        too_close_above = bucket - timeout < buckets[0]
        too_close_below = index > 0 and timeout - buckets[index - 1] < buckets[0]
        if too_close_above or too_close_below:
            return buckets
        buckets.insert(index, timeout)
    return buckets