"""In-memory storage of the last two metric batches for nodes and pods."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from nodemetrics.instrumentation import GaugeVec
from nodemetrics.types import (
    ContainerMetrics,
    MetricsBatch,
    MetricsPoint,
    NamespacedName,
    Node,
    NodeMetrics,
    PodMetadata,
    PodMetrics,
    PodMetricsPoint,
    ResourceUsageError,
    TimeInfo,
    resource_usage,
)

logger = logging.getLogger(__name__)

# A fresh container needs at least this long between its start time and its
# timestamp; shorter spans give inaccurate CPU rates.
FRESH_CONTAINER_MIN_METRICS_RESOLUTION = timedelta(seconds=10)

points_stored = GaugeVec(
    name="points",
    help="Number of metrics points stored.",
    namespace="metrics_server",
    subsystem="storage",
    label_names=("type",),
)


def register_storage_metrics(registration_func: Callable[[Any], Any]) -> Any:
    """Register the stored-points gauge using the given registration function."""
    return registration_func(points_stored)


def _starts_before(start_time: datetime | None, moment: datetime) -> bool:
    """True if a start time lies before a moment; an unknown start is earliest."""
    return start_time is None or start_time < moment


def _is_fresh(point: MetricsPoint, resolution: timedelta) -> bool:
    if point.start_time is None or not point.start_time < point.timestamp:
        return False
    age = point.timestamp - point.start_time
    return FRESH_CONTAINER_MIN_METRICS_RESOLUTION <= age < resolution


class NodeStorage:
    """Keeps the last two node points and derives CPU and memory usage from them."""

    def __init__(self) -> None:
        self.last: dict[str, MetricsPoint] = {}
        self.prev: dict[str, MetricsPoint] = {}

    def get_metrics(self, *args: Node) -> list[NodeMetrics]:
        """Return usage for the given nodes that have two usable points."""
        results = []
        for node in args:
            last = self.last.get(node.name)
            prev = self.prev.get(node.name)
            if last is None or prev is None:
                continue
            try:
                usage, info = resource_usage(last, prev)
            except ResourceUsageError as err:
                logger.error("Skipping node usage metric for %s: %s", node.name, err)
                continue
            results.append(
                NodeMetrics(
                    name=node.name,
                    labels=node.labels,
                    timestamp=info.timestamp,
                    window=info.window,
                    usage=usage,
                )
            )
        return results

    def store(self, batch: MetricsBatch) -> None:
        """Replace stored points with the batch, keeping a suitable previous point."""
        last_nodes: dict[str, MetricsPoint] = {}
        prev_nodes: dict[str, MetricsPoint] = {}
        for node_name, new_point in batch.nodes.items():
            last_nodes[node_name] = new_point
            stored = self.last.get(node_name)
            if stored is None:
                continue
            if new_point.timestamp > stored.timestamp:
                prev_nodes[node_name] = stored
                continue
            prev_point = self.prev.get(node_name)
            if prev_point is None:
                continue
            if prev_point.timestamp < new_point.timestamp:
                prev_nodes[node_name] = prev_point
            else:
                logger.debug(
                    "Found new node metrics point older than stored previous, drop previous: "
                    "node=%s previous=%s timestamp=%s",
                    node_name,
                    prev_point.timestamp,
                    new_point.timestamp,
                )
        self.last = last_nodes
        self.prev = prev_nodes
        points_stored.with_label_values("node").set(len(prev_nodes))


class PodStorage:
    """Keeps the last two container points per pod and derives usage from them."""

    def __init__(self, metric_resolution: timedelta) -> None:
        self.metric_resolution = metric_resolution
        self.last: dict[NamespacedName, PodMetricsPoint] = {}
        self.prev: dict[NamespacedName, PodMetricsPoint] = {}

    def get_metrics(self, *args: PodMetadata) -> list[PodMetrics]:
        """Return usage for the given pods whose containers all have two points.

        A pod whose containers all fail usage computation is returned with no
        containers, a timestamp of None and a zero window.
        """
        results = []
        for pod in args:
            ref = NamespacedName(namespace=pod.namespace, name=pod.name)
            last_pod = self.last.get(ref)
            prev_pod = self.prev.get(ref)
            if last_pod is None or prev_pod is None:
                continue
            if any(name not in prev_pod.containers for name in last_pod.containers):
                continue
            containers = []
            earliest: TimeInfo | None = None
            for name, last_container in last_pod.containers.items():
                try:
                    usage, info = resource_usage(last_container, prev_pod.containers[name])
                except ResourceUsageError as err:
                    logger.error(
                        "Skipping container usage metric for %s in %s/%s: %s",
                        name,
                        pod.namespace,
                        pod.name,
                        err,
                    )
                    continue
                containers.append(ContainerMetrics(name=name, usage=usage))
                if earliest is None or earliest.timestamp > info.timestamp:
                    earliest = info
            results.append(
                PodMetrics(
                    name=pod.name,
                    namespace=pod.namespace,
                    labels=pod.labels,
                    timestamp=earliest.timestamp if earliest else None,
                    window=earliest.window if earliest else timedelta(0),
                    containers=containers,
                )
            )
        return results

    def _previous_point(
        self, ref: NamespacedName, name: str, new_point: MetricsPoint
    ) -> MetricsPoint | None:
        if _is_fresh(new_point, self.metric_resolution):
            return MetricsPoint(
                start_time=new_point.start_time,
                timestamp=new_point.start_time,
                cumulative_cpu_used=0,
                memory_usage=new_point.memory_usage,
            )
        last_pod = self.last.get(ref)
        if last_pod is None:
            return None
        last_container = last_pod.containers.get(name)
        # A start time after the stored timestamp means the container restarted.
        if last_container is None or not _starts_before(
            new_point.start_time, last_container.timestamp
        ):
            return None
        if new_point.timestamp > last_container.timestamp:
            return last_container
        prev_pod = self.prev.get(ref)
        if prev_pod is None:
            return None
        prev_container = prev_pod.containers.get(name)
        if prev_container is not None and prev_container.timestamp < new_point.timestamp:
            return prev_container
        logger.debug(
            "Found new container metrics point older than stored previous, drop previous: "
            "container=%s pod=%s/%s timestamp=%s",
            name,
            ref.namespace,
            ref.name,
            new_point.timestamp,
        )
        return None

    def store(self, batch: MetricsBatch) -> None:
        """Replace stored points with the batch, keeping suitable previous points."""
        last_pods: dict[NamespacedName, PodMetricsPoint] = {}
        prev_pods: dict[NamespacedName, PodMetricsPoint] = {}
        container_count = 0
        for ref, new_pod in batch.pods.items():
            new_last = PodMetricsPoint(containers=dict(new_pod.containers))
            new_prev = PodMetricsPoint()
            for name, new_point in new_pod.containers.items():
                previous = self._previous_point(ref, name, new_point)
                if previous is not None:
                    new_prev.containers[name] = previous
            if new_prev.containers:
                prev_pods[ref] = new_prev
            last_pods[ref] = new_last
            container_count += len(new_prev.containers)
        self.last = last_pods
        self.prev = prev_pods
        points_stored.with_label_values("container").set(container_count)


class Storage:
    """Thread-safe storage for node and pod metrics."""

    def __init__(self, metric_resolution: timedelta) -> None:
        self._lock = threading.Lock()
        self.nodes = NodeStorage()
        self.pods = PodStorage(metric_resolution)

    def ready(self) -> bool:
        """True once enough points have been stored to serve any metrics."""
        with self._lock:
            return bool(self.nodes.prev) or bool(self.pods.prev)

    def get_node_metrics(self, *args: Node) -> list[NodeMetrics]:
        """Return metrics for the given nodes."""
        with self._lock:
            return self.nodes.get_metrics(*args)

    def get_pod_metrics(self, *args: PodMetadata) -> list[PodMetrics]:
        """Return metrics for the given pods."""
        with self._lock:
            return self.pods.get_metrics(*args)

    def store(self, batch: MetricsBatch) -> None:
        """Store a new batch of node and pod points."""
        with self._lock:
            self.nodes.store(batch)
            self.pods.store(batch)