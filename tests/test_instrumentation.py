from datetime import timedelta

import pytest

from nodemetrics.instrumentation import (
    DEF_BUCKETS,
    Gauge,
    GaugeVec,
    Histogram,
    Registry,
    buckets_for_scrape_duration,
)


@pytest.mark.parametrize(
    "timeout",
    [timedelta(seconds=15), timedelta(seconds=5), timedelta(seconds=DEF_BUCKETS[-1])],
)
def test_buckets_strictly_increasing(timeout):
    buckets = buckets_for_scrape_duration(timeout)
    assert buckets[0] > 0
    assert all(a < b for a, b in zip(buckets, buckets[1:]))
    assert timeout.total_seconds() in buckets


def test_buckets_around_long_timeout():
    buckets = buckets_for_scrape_duration(timedelta(seconds=15))
    assert 15.0 in buckets
    assert 30.0 in buckets


def test_buckets_short_timeout_included():
    assert 5.0 in buckets_for_scrape_duration(timedelta(seconds=5))


def test_buckets_equal_to_max_bucket():
    max_bucket = DEF_BUCKETS[-1]
    buckets = buckets_for_scrape_duration(timedelta(seconds=max_bucket))
    assert max_bucket in buckets
    assert buckets == list(DEF_BUCKETS)


def test_buckets_inserts_timeout_between_defaults():
    buckets = buckets_for_scrape_duration(3)
    assert 3.0 in buckets
    assert len(buckets) == len(DEF_BUCKETS) + 1
    assert buckets[0] > 0
    assert all(a < b for a, b in zip(buckets, buckets[1:]))


def test_buckets_skip_timeout_close_to_existing():
    assert buckets_for_scrape_duration(0.5) == list(DEF_BUCKETS)


def test_histogram_full_name_and_observe():
    histogram = Histogram(
        namespace="metrics_server",
        subsystem="manager",
        name="tick_duration_seconds",
        buckets=[1.0, 2.0],
    )
    assert histogram.full_name == "metrics_server_manager_tick_duration_seconds"
    histogram.observe(0.5)
    histogram.observe(1.5)
    histogram.observe(9.0)
    assert histogram.count == 3
    assert histogram.sum == pytest.approx(11.0)
    assert histogram.bucket_counts == (1, 2, 3)


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram(name="h", buckets=[2.0, 1.0])


def test_gauge_set():
    gauge = Gauge(name="g")
    gauge.set(4)
    assert gauge.value == 4.0


def test_gauge_vec_collect_and_reset():
    vec = GaugeVec(
        namespace="metrics_server", subsystem="storage", name="points", label_names=["type"]
    )
    vec.with_label_values("node").set(1)
    vec.with_label_values("container").set(2)
    assert vec.collect() == {("container",): 2.0, ("node",): 1.0}
    assert vec.with_label_values("node") is vec.with_label_values("node")
    vec.reset()
    assert vec.collect() == {}


def test_gauge_vec_wrong_label_count():
    vec = GaugeVec(name="points", label_names=["type"])
    with pytest.raises(ValueError):
        vec.with_label_values("a", "b")


def test_registry_rejects_duplicates():
    registry = Registry()
    registry.register(Gauge(name="points", namespace="metrics_server"))
    assert "metrics_server_points" in registry
    with pytest.raises(ValueError):
        registry.register(Gauge(name="points", namespace="metrics_server"))
    assert len(registry) == 1