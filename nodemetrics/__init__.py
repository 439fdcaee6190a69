"""In-memory node and pod resource metrics with usage-rate calculation, a scrape loop and health probes."""

__version__ = "0.1.0"

__all__ = ["addresses", "instrumentation", "server", "storage", "types"]