"""
Lightweight metrics collection for the match feed.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
SOURCE_REQUESTS = Counter(
    "mf_source_requests_total",
    "Total upstream fixture requests",
    ["endpoint", "status"],
)
SOURCE_PARSE_ERRORS = Counter(
    "mf_source_parse_errors_total",
    "Upstream fixture records skipped because they could not be normalized",
    ["endpoint"],
)
FEED_CYCLES = Counter(
    "mf_feed_cycles_total",
    "Completed feed cycles by outcome",
    ["outcome"],
)
TRANSITION_EVENTS = Counter(
    "mf_transition_events_total",
    "Transition events emitted",
    ["kind"],
)
CACHE_OPERATIONS = Counter(
    "mf_cache_operations_total",
    "Persisted cache operations",
    ["op", "result"],
)
CACHE_EVICTIONS = Counter(
    "mf_cache_evictions_total",
    "Cache entries evicted",
    ["reason"],
)

# ── Histograms ──────────────────────────────────────────────────────────
SOURCE_LATENCY = Histogram(
    "mf_source_latency_seconds",
    "Upstream request latency in seconds",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
CYCLE_DURATION = Histogram(
    "mf_feed_cycle_seconds",
    "Wall time of one feed cycle",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
REFRESH_INTERVAL = Histogram(
    "mf_refresh_interval_seconds",
    "Refresh interval chosen by the policy",
    ["urgency"],
    buckets=(15, 30, 45, 60, 120),
)

# ── Gauges ──────────────────────────────────────────────────────────────
ACTIVE_VIEWS = Gauge(
    "mf_active_views",
    "Views with a running polling loop",
)
LIVE_FIXTURES = Gauge(
    "mf_live_fixtures",
    "Live fixtures in the latest snapshot of a view",
    ["view"],
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if labels:
            histogram.labels(**labels).observe(elapsed)
        else:
            histogram.observe(elapsed)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
