"""Metric point types and resource usage computation."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

logger = logging.getLogger(__name__)

MAX_INT64 = 2**63 - 1
MAX_UINT64 = 2**64 - 1

RESOURCE_CPU = "cpu"
RESOURCE_MEMORY = "memory"


class QuantityFormat(enum.Enum):
    DECIMAL_EXPONENT = "DecimalExponent"
    BINARY_SI = "BinarySI"
    DECIMAL_SI = "DecimalSI"


@dataclass(frozen=True)
class Quantity:
    """An integer value scaled by a power of ten."""

    value: int
    scale: int = 0
    format: QuantityFormat = QuantityFormat.DECIMAL_SI

    def amount(self) -> Decimal:
        """The exact numeric amount, value * 10**scale."""
        return Decimal(self.value).scaleb(self.scale)


class NodeAddressType(str, enum.Enum):
    HOSTNAME = "Hostname"
    INTERNAL_DNS = "InternalDNS"
    INTERNAL_IP = "InternalIP"
    EXTERNAL_DNS = "ExternalDNS"
    EXTERNAL_IP = "ExternalIP"


@dataclass(frozen=True)
class NodeAddress:
    type: NodeAddressType
    address: str


@dataclass
class Node:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    addresses: list[NodeAddress] = field(default_factory=list)


@dataclass
class PodMetadata:
    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, order=True)
class NamespacedName:
    namespace: str
    name: str


@dataclass(frozen=True)
class MetricsPoint:
    """A measurement at one point in time.

    ``start_time`` of None means the start time is unknown.
    ``cumulative_cpu_used`` is in nanocore-seconds; ``memory_usage`` in bytes.
    """

    start_time: datetime | None
    timestamp: datetime
    cumulative_cpu_used: int = 0
    memory_usage: int = 0


@dataclass
class PodMetricsPoint:
    containers: dict[str, MetricsPoint] = field(default_factory=dict)


@dataclass
class MetricsBatch:
    nodes: dict[str, MetricsPoint] = field(default_factory=dict)
    pods: dict[NamespacedName, PodMetricsPoint] = field(default_factory=dict)


@dataclass(frozen=True)
class TimeInfo:
    timestamp: datetime
    window: timedelta


@dataclass
class ContainerMetrics:
    name: str
    usage: dict[str, Quantity]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NodeMetrics:
    name: str
    timestamp: datetime
    window: timedelta
    usage: dict[str, Quantity]
    labels: dict[str, str] = field(default_factory=dict)
    creation_timestamp: datetime = field(default_factory=_now)


@dataclass
class PodMetrics:
    name: str
    namespace: str
    timestamp: datetime
    window: timedelta
    containers: list[ContainerMetrics]
    labels: dict[str, str] = field(default_factory=dict)
    creation_timestamp: datetime = field(default_factory=_now)


class ResourceUsageError(ValueError):
    """Usage cannot be computed from a pair of metric points."""


def uint64_quantity(val: int, fmt: QuantityFormat, scale: int) -> Quantity:
    """Build a Quantity from an unsigned 64-bit value, losing a digit if it overflows int64."""
    if not 0 <= val <= MAX_UINT64:
        raise ValueError(f"value {val} is outside the unsigned 64-bit range")
    if val > MAX_INT64:
        logger.debug(
            "Found unexpectedly large resource value, losing precision to fit in scaled quantity: %d",
            val,
        )
        return Quantity(val // 10, scale + 1, fmt)
    return Quantity(val, scale, fmt)


def resource_usage(
    last: MetricsPoint, prev: MetricsPoint
) -> tuple[dict[str, Quantity], TimeInfo]:
    """Compute CPU rate and memory usage between two points."""
    if last.cumulative_cpu_used < prev.cumulative_cpu_used:
        raise ResourceUsageError("unexpected decrease in cumulative CPU usage value")
    window = last.timestamp - prev.timestamp
    if window <= timedelta(0):
        raise ResourceUsageError("time window between metric points is not positive")
    cpu_usage = (last.cumulative_cpu_used - prev.cumulative_cpu_used) / window.total_seconds()
    usage = {
        RESOURCE_CPU: uint64_quantity(int(cpu_usage), QuantityFormat.DECIMAL_SI, -9),
        RESOURCE_MEMORY: uint64_quantity(last.memory_usage, QuantityFormat.BINARY_SI, 0),
    }
    return usage, TimeInfo(timestamp=last.timestamp, window=window)