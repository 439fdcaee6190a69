import threading
from datetime import datetime, timedelta, timezone

import pytest

from nodemetrics.instrumentation import Registry
from nodemetrics.server import (
    HealthCheckError,
    MetricsRegistrationError,
    Server,
    metadata_informer_sync_healthz,
    register_metrics,
    register_server_metrics,
)
from nodemetrics.types import MetricsBatch, MetricsPoint

RESOLUTION = timedelta(seconds=60)


def now():
    return datetime.now(timezone.utc)


class ScraperMock:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def scrape(self, timeout):
        self.calls.append(timeout)
        return self.result


class StorageMock:
    def __init__(self, is_ready=False):
        self.is_ready = is_ready
        self.stored = []
        self.stored_event = threading.Event()

    def store(self, batch):
        self.stored.append(batch)
        self.stored_event.set()

    def ready(self):
        return self.is_ready


class ControllerMock:
    def __init__(self, syncs=True):
        self.syncs = syncs
        self.synced = False

    def run(self, stop_event):
        if self.syncs:
            self.synced = True
        stop_event.wait()

    def has_synced(self):
        return self.synced


class WaiterMock:
    def __init__(self, results):
        self.results = results
        self.seen_stop_set = None

    def wait_for_cache_sync(self, stop_event):
        self.seen_stop_set = stop_event.is_set()
        return self.results


@pytest.fixture
def batch():
    return MetricsBatch(
        nodes={"node1": MetricsPoint(start_time=None, timestamp=now())}
    )


@pytest.fixture
def scraper(batch):
    return ScraperMock(batch)


@pytest.fixture
def store():
    return StorageMock()


@pytest.fixture
def srv(scraper, store):
    return Server(None, None, store, scraper, RESOLUTION)


def test_collection_timely_passes_before_first_tick(srv):
    check = srv.probe_metric_collection_timely("")
    assert srv.tick_last_start is None
    assert check.check(None) is None


def test_collection_timely_passes_after_tick(srv, store, batch):
    srv.tick(now())
    check = srv.probe_metric_collection_timely("")
    assert check.check(None) is None
    assert store.stored == [batch]


def test_collection_timely_passes_if_scrape_succeeds(srv):
    start = now() - RESOLUTION
    srv.tick(start)
    check = srv.probe_metric_collection_timely("")
    assert check.check(None) is None
    assert srv.tick_last_start == start


def test_collection_timely_fails_if_last_scrape_took_too_long(srv):
    srv.tick(now() - 2 * RESOLUTION)
    check = srv.probe_metric_collection_timely("")
    with pytest.raises(HealthCheckError, match="didn't finish on time"):
        check.check(None)


def test_storage_ready_probe_fails_if_not_ready(srv):
    check = srv.probe_metric_storage_ready("")
    with pytest.raises(HealthCheckError, match="no metrics to serve"):
        check.check(None)


def test_storage_ready_probe_passes_if_ready(srv, store):
    store.is_ready = True
    check = srv.probe_metric_storage_ready("metric-storage-ready")
    assert check.check(None) is None
    assert check.name == "metric-storage-ready"


def test_tick_passes_resolution_as_timeout(srv, scraper):
    srv.tick(now())
    assert scraper.calls == [RESOLUTION]


def test_tick_observes_duration(srv):
    registered = []
    register_server_metrics(registered.append, RESOLUTION)
    assert len(registered) == 1
    histogram = registered[0]
    assert histogram.full_name == "metrics_server_manager_tick_duration_seconds"
    assert 60.0 in histogram.buckets
    assert histogram.count == 0
    srv.tick(now())
    assert histogram.count == 1
    assert 0 <= histogram.sum < 60.0


def test_cache_synced_probe():
    nodes = ControllerMock()
    pods = ControllerMock()
    srv = Server(nodes, pods, StorageMock(), ScraperMock(MetricsBatch()), RESOLUTION)
    check = srv.probe_metric_cache_has_synced("sync")
    with pytest.raises(HealthCheckError, match="node informer"):
        check.check(None)
    nodes.synced = True
    with pytest.raises(HealthCheckError, match="pod informer"):
        check.check(None)
    pods.synced = True
    assert check.check(None) is None


def test_metadata_informer_sync_passes_when_all_started():
    waiter = WaiterMock({"pods": True, "nodes": True})
    check = metadata_informer_sync_healthz("metadata-informer-sync", waiter)
    assert check.check(None) is None
    assert waiter.seen_stop_set is True
    assert check.name == "metadata-informer-sync"


def test_metadata_informer_sync_fails_when_not_started():
    waiter = WaiterMock({"pods": False, "nodes": True, "services": False})
    check = metadata_informer_sync_healthz("metadata-informer-sync", waiter)
    with pytest.raises(HealthCheckError, match=r"2 informers not started yet: \[pods services\]"):
        check.check(None)


def test_register_probes(srv):
    srv.register_probes(WaiterMock({}))
    assert [c.name for c in srv.readyz_checks] == [
        "metric-storage-ready",
        "metric-informer-sync",
        "metadata-informer-sync",
    ]
    assert [c.name for c in srv.livez_checks] == [
        "metric-collection-timely",
        "metadata-informer-sync",
    ]
    assert [c.name for c in srv.healthz_checks] == ["metadata-informer-sync"]


def test_register_probes_twice_fails(srv):
    srv.register_probes(WaiterMock({}))
    with pytest.raises(ValueError, match="already registered"):
        srv.register_probes(WaiterMock({}))


def test_register_metrics_names():
    registry = Registry()
    register_metrics(registry, RESOLUTION)
    assert "metrics_server_manager_tick_duration_seconds" in registry
    assert "metrics_server_storage_points" in registry
    assert len(registry) == 2


def test_register_metrics_twice_fails():
    registry = Registry()
    register_metrics(registry, RESOLUTION)
    with pytest.raises(MetricsRegistrationError, match="unable to register server metrics"):
        register_metrics(registry, RESOLUTION)


def test_run_scrape_ticks_once_when_stopped(srv, store, batch):
    stop = threading.Event()
    stop.set()
    srv.run_scrape(stop)
    assert store.stored == [batch]


def test_run_until_scrapes_and_serves(batch):
    store = StorageMock()
    served = []

    def serve(stop_event):
        served.append(store.stored_event.wait(5))
        stop_event.set()
        return "done"

    srv = Server(
        ControllerMock(), ControllerMock(), store, ScraperMock(batch), RESOLUTION, serve=serve
    )
    result = srv.run_until(threading.Event())
    assert result == "done"
    assert served == [True]
    assert store.stored[0] is batch


def test_run_until_returns_without_sync_when_stopped(batch):
    store = StorageMock()
    served = []
    srv = Server(
        ControllerMock(syncs=False),
        ControllerMock(syncs=False),
        store,
        ScraperMock(batch),
        RESOLUTION,
        serve=served.append,
    )
    stop = threading.Event()
    stop.set()
    assert srv.run_until(stop) is None
    assert served == []
    assert store.stored == []