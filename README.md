# nodemetrics

`nodemetrics` keeps the two most recent resource samples for each node and
container in memory. From each pair it works out current CPU and memory
usage. It also has the scrape loop, health probes and small instruments that
a periodic scraping server needs.

The package has no runtime dependencies.

## Installation

```
pip install nodemetrics
```

To run the test suite as well:

```
pip install "nodemetrics[test]"
pytest
```

## Concepts

All of these live in `nodemetrics.types` unless noted otherwise.

- **`MetricsPoint`** is one sample. It has `start_time` (`None` when the start
  time is unknown) and `timestamp`. It also has `cumulative_cpu_used` in
  nano-core-seconds and `memory_usage` (working set) in bytes.
- **`MetricsBatch`** is the result of one scrape. `nodes` maps node names to
  points. `pods` maps a `NamespacedName` to a `PodMetricsPoint`, whose
  `containers` maps container names to points.
- **`nodemetrics.storage.Storage(metric_resolution)`** takes batches through
  `store(batch)`. It guards all access with a lock.
  - `ready()` is true once at least one node or pod has a previous point.
  - `get_node_metrics(*nodes)` takes `Node` objects and returns `NodeMetrics`.
  - `get_pod_metrics(*pods)` takes `PodMetadata` objects and returns
    `PodMetrics`.

  The usage in both is computed over the window between the last two samples.

CPU usage is a `Quantity` in nano-cores, with value and scale `-9` and
`QuantityFormat.DECIMAL_SI`. Memory usage is a `Quantity` in bytes with
`QuantityFormat.BINARY_SI`. `Quantity.amount()` gives the exact `Decimal`
value. `uint64_quantity` builds a quantity from an unsigned 64-bit value. If
the value does not fit in a signed 64-bit integer, it drops one decimal digit.

`resource_usage(last, prev)` raises `ResourceUsageError` in two cases: when
cumulative CPU decreases, and when the window between the points is not
positive.

### How samples are kept

- A node or container shows up in results only when both its last and its
  previous point are stored.
- A new sample that is not newer than the stored one keeps the stored
  previous point, as long as that point is older than the new sample.
  Otherwise the previous point is dropped.
- A container whose start time is not before the stored timestamp is treated
  as restarted. Its previous point is discarded.
- A freshly started container gets a rate from its first sample. This applies
  when the sample is at least 10 seconds after its start time and less than
  one metric resolution after it. The start time is then used as a previous
  point with zero CPU.
- A pod is left out of results when any of its last containers lacks a
  previous point.
- Containers whose usage cannot be computed are skipped, and the error is
  logged. If every container is skipped, the pod is returned with no
  containers, a `timestamp` of `None` and a zero window.
- The pod timestamp and window are taken from its earliest container.

## Example

```python
from datetime import datetime, timedelta

from nodemetrics.storage import Storage
from nodemetrics.types import MetricsBatch, MetricsPoint, Node

CORE_SECOND = 1_000_000_000
MIB = 1024 * 1024

store = Storage(timedelta(seconds=60))
start = datetime.now()

store.store(MetricsBatch(nodes={
    "node1": MetricsPoint(start, start + timedelta(seconds=10), 10 * CORE_SECOND, 2 * MIB),
}))
store.store(MetricsBatch(nodes={
    "node1": MetricsPoint(start, start + timedelta(seconds=20), 20 * CORE_SECOND, 3 * MIB),
}))

assert store.ready()
(metrics,) = store.get_node_metrics(Node(name="node1"))
print(metrics.window, metrics.usage)
```

## Other pieces

### `nodemetrics.addresses`

`PriorityNodeAddressResolver(type_priority)` picks the address to use for a
node. It walks the address types in order of preference. Within one type, it
takes addresses in the order the node lists them.

The default order is:

- hostname
- internal DNS
- internal IP
- external DNS
- external IP

`node_address(node)` raises `LookupError` when no address matches.

### `nodemetrics.instrumentation`

- `Registry` holds uniquely named metrics. `register` raises `ValueError` on a
  duplicate name.
- `Histogram`, `Gauge` and `GaugeVec` are the metric types. `GaugeVec` offers
  `with_label_values`, `reset` and `collect`.
- `buckets_for_scrape_duration(scrape_timeout)` takes a `timedelta` or a
  number of seconds. It extends the default buckets with buckets around the
  timeout.

### `nodemetrics.storage`

`register_storage_metrics(registration_func)` registers the
`metrics_server_storage_points` gauge.

### `nodemetrics.server`

`Server(nodes, pods, storage, scraper, resolution, serve=None)` runs the
scrape loop. It works with any objects that provide these methods:

- controllers: `run(stop_event)` and `has_synced()`
- scraper: `scrape(timeout) -> MetricsBatch`
- store: `store(batch)` and `ready()`

Its methods:

- `tick(start_time)` scrapes once, stores the batch and records the time taken
  in the `metrics_server_manager_tick_duration_seconds` histogram.
- `run_scrape(stop_event)` ticks now and then once per resolution.
- `run_until(stop_event)` starts the controllers and waits for their caches to
  sync. It then runs the scrape loop, and calls `serve(stop_event)` if one was
  given; otherwise it waits for the event.
- `register_probes(waiter)` installs the readiness checks
  (`metric-storage-ready`, `metric-informer-sync`), the liveness check
  (`metric-collection-timely`) and the health check
  (`metadata-informer-sync`).

A failing probe raises `HealthCheckError`. The three probes are:

- `probe_metric_collection_timely` fails when the last tick started more than
  1.5 resolutions ago.
- `probe_metric_storage_ready` fails until the store is ready.
- `probe_metric_cache_has_synced` fails until both caches have synced.

`register_metrics(registry, metric_resolution)` registers the tick histogram
and the storage gauge on one registry. A failure raises
`MetricsRegistrationError`.

## What this package does not do

- It does not collect samples from nodes itself. You supply the scraper.
- It has no HTTP server that serves the metrics or the probes. `serve` is
  whatever callable you pass.
- It has no command-line entry point.
- It does not export instruments in any wire format. Values are read from the
  objects directly.