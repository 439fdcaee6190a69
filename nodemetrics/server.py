"""Scrape loop, health probes and metric registration for the metrics server."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from nodemetrics.instrumentation import Histogram, Registry, buckets_for_scrape_duration
from nodemetrics.storage import register_storage_metrics
from nodemetrics.types import MetricsBatch

logger = logging.getLogger(__name__)

_CACHE_SYNC_POLL_SECONDS = 0.1

# Replaced by register_server_metrics; until then observations go nowhere visible.
tick_duration = Histogram()


class HealthCheckError(Exception):
    """A health, readiness or liveness check failed."""


class MetricsRegistrationError(RuntimeError):
    """A group of metrics could not be registered."""


class Controller(Protocol):
    def run(self, stop_event: threading.Event) -> None: ...

    def has_synced(self) -> bool: ...


class Scraper(Protocol):
    def scrape(self, timeout: timedelta) -> MetricsBatch: ...


class MetricsStore(Protocol):
    def store(self, batch: MetricsBatch) -> None: ...

    def ready(self) -> bool: ...


class CacheSyncWaiter(Protocol):
    def wait_for_cache_sync(self, stop_event: threading.Event) -> Mapping[Any, bool]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HealthCheck:
    """A named check that raises HealthCheckError when it fails."""

    name: str
    func: Callable[[Any], None]

    def check(self, request: Any) -> None:
        """Run the check; raises HealthCheckError on failure."""
        self.func(request)


@dataclass
class MetadataInformerSync:
    """Passes only when every informer of the waiter has synced."""

    name: str
    cache_sync_waiter: CacheSyncWaiter

    def check(self, request: Any) -> None:
        """Raise HealthCheckError listing the informers that have not started."""
        stop_event = threading.Event()
        # A stop that is already set makes the waiter report the current state.
        stop_event.set()
        results = self.cache_sync_waiter.wait_for_cache_sync(stop_event)
        not_started = [str(informer) for informer, started in results.items() if not started]
        if not_started:
            raise HealthCheckError(
                f"{len(not_started)} informers not started yet: [{' '.join(not_started)}]"
            )


def metadata_informer_sync_healthz(
    name: str, cache_sync_waiter: CacheSyncWaiter
) -> MetadataInformerSync:
    """A check that passes only if all informers of the waiter have synced."""
    return MetadataInformerSync(name=name, cache_sync_waiter=cache_sync_waiter)


def register_server_metrics(
    registration_func: Callable[[Any], Any], resolution: timedelta
) -> Any:
    """Create the tick duration histogram and register it."""
    global tick_duration
    tick_duration = Histogram(
        name="tick_duration_seconds",
        help="The total time spent collecting and storing metrics in seconds.",
        namespace="metrics_server",
        subsystem="manager",
        buckets=buckets_for_scrape_duration(resolution),
    )
    return registration_func(tick_duration)


def register_metrics(registry: Registry, metric_resolution: timedelta) -> None:
    """Register the server and storage metrics in the registry."""
    try:
        register_server_metrics(registry.register, metric_resolution)
    except ValueError as err:
        raise MetricsRegistrationError(f"unable to register server metrics: {err}") from err
    try:
        register_storage_metrics(registry.register)
    except ValueError as err:
        raise MetricsRegistrationError(f"unable to register storage metrics: {err}") from err


def _wait_for_cache_sync(stop_event: threading.Event, synced: Callable[[], bool]) -> bool:
    while not synced():
        if stop_event.wait(_CACHE_SYNC_POLL_SECONDS):
            return False
    return True


class Server:
    """Scrapes metrics periodically into storage and exposes health probes."""

    def __init__(
        self,
        nodes: Controller,
        pods: Controller,
        storage: MetricsStore,
        scraper: Scraper,
        resolution: timedelta,
        serve: Callable[[threading.Event], Any] | None = None,
    ) -> None:
        self.nodes = nodes
        self.pods = pods
        self.storage = storage
        self.scraper = scraper
        self.resolution = resolution
        self._serve = serve
        self._tick_lock = threading.Lock()
        self._tick_last_start: datetime | None = None
        self._readyz: list[Any] = []
        self._livez: list[Any] = []
        self._healthz: list[Any] = []

    @property
    def tick_last_start(self) -> datetime | None:
        """Start time of the most recent tick, or None before the first one."""
        with self._tick_lock:
            return self._tick_last_start

    @property
    def readyz_checks(self) -> tuple[Any, ...]:
        return tuple(self._readyz)

    @property
    def livez_checks(self) -> tuple[Any, ...]:
        return tuple(self._livez)

    @property
    def healthz_checks(self) -> tuple[Any, ...]:
        return tuple(self._healthz)

    def run_until(self, stop_event: threading.Event) -> Any:
        """Start informers and the scrape loop, then serve until stopped."""
        scrape_stop = threading.Event()
        try:
            for controller in (self.nodes, self.pods):
                threading.Thread(target=controller.run, args=(stop_event,), daemon=True).start()

            if not _wait_for_cache_sync(stop_event, self.nodes.has_synced):
                return None
            if not _wait_for_cache_sync(stop_event, self.pods.has_synced):
                return None

            threading.Thread(target=self.run_scrape, args=(scrape_stop,), daemon=True).start()
            if self._serve is None:
                stop_event.wait()
                return None
            return self._serve(stop_event)
        finally:
            scrape_stop.set()

    def run_scrape(self, stop_event: threading.Event) -> None:
        """Tick now and then once per resolution until the event is set."""
        period = self.resolution.total_seconds()
        next_tick = time.monotonic() + period
        self.tick(_now())
        while True:
            if stop_event.wait(max(0.0, next_tick - time.monotonic())):
                return
            next_tick += period
            self.tick(_now())

    def tick(self, start_time: datetime) -> None:
        """Scrape once, store the result and record how long it took."""
        with self._tick_lock:
            self._tick_last_start = start_time

        logger.debug("Scraping metrics")
        data = self.scraper.scrape(self.resolution)

        logger.debug("Storing metrics")
        self.storage.store(data)

        collect_time = _now() - start_time
        tick_duration.observe(collect_time.total_seconds())
        logger.debug("Scraping cycle complete")

    def _add(self, targets: Iterable[list[Any]], check: Any) -> None:
        for target in targets:
            if any(existing.name == check.name for existing in target):
                raise ValueError(f"check {check.name!r} is already registered")
        for target in targets:
            target.append(check)

    def register_probes(self, waiter: CacheSyncWaiter) -> None:
        """Install the readiness, liveness and health checks."""
        self._add([self._readyz], self.probe_metric_storage_ready("metric-storage-ready"))
        self._add([self._readyz], self.probe_metric_cache_has_synced("metric-informer-sync"))
        self._add(
            [self._livez], self.probe_metric_collection_timely("metric-collection-timely")
        )
        self._add(
            [self._healthz, self._livez, self._readyz],
            metadata_informer_sync_healthz("metadata-informer-sync", waiter),
        )

    def probe_metric_collection_timely(self, name: str) -> HealthCheck:
        """Fails if the last tick started more than 1.5 resolutions ago."""

        def check(_request: Any) -> None:
            last_start = self.tick_last_start
            max_tick_wait = self.resolution * 1.5
            if last_start is None:
                return
            tick_wait = _now() - last_start
            if tick_wait > max_tick_wait:
                err = HealthCheckError("metric collection didn't finish on time")
                logger.info(
                    "Failed probe %s: %s (duration=%s, maxDuration=%s)",
                    name,
                    err,
                    tick_wait,
                    max_tick_wait,
                )
                raise err

        return HealthCheck(name, check)

    def probe_metric_storage_ready(self, name: str) -> HealthCheck:
        """Fails until the storage has metrics to serve."""

        def check(_request: Any) -> None:
            if not self.storage.ready():
                err = HealthCheckError("no metrics to serve")
                logger.info("Failed probe %s: %s", name, err)
                raise err

        return HealthCheck(name, check)

    def probe_metric_cache_has_synced(self, name: str) -> HealthCheck:
        """Fails until both the node and pod informer caches have synced."""

        def check(_request: Any) -> None:
            if not self.nodes.has_synced():
                err = HealthCheckError("cache for node informer has not synced")
                logger.info("Failed probe %s: %s", name, err)
                raise err
            if not self.pods.has_synced():
                err = HealthCheckError("cache for pod informer has not synced")
                logger.info("Failed probe %s: %s", name, err)
                raise err

        return HealthCheck(name, check)