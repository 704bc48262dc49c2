"""
Metrics collection for the meet reconciler.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
SOURCE_REQUESTS = Counter(
    "mr_source_requests_total",
    "Total remote source requests",
    ["operation", "status"],
)
RESOLUTIONS = Counter(
    "mr_resolutions_total",
    "Identity resolution outcomes",
    ["tier", "outcome"],
)
RANGE_SPLITS = Counter(
    "mr_range_splits_total",
    "Date ranges bisected after a suspected upstream failure",
    ["reason"],
)
VERDICTS = Counter(
    "mr_completeness_verdicts_total",
    "Completeness verdicts produced by the analyzer",
    ["status"],
)
LEDGER_DEMOTIONS = Counter(
    "mr_ledger_demotions_total",
    "Meets demoted from complete after a local count change",
)
SESSION_ITEMS = Counter(
    "mr_session_items_total",
    "Items processed by the orchestrator",
    ["mode", "status"],
)
CIRCUIT_TRANSITIONS = Counter(
    "mr_circuit_transitions_total",
    "Circuit breaker state changes",
    ["name", "state"],
)

# ── Histograms ──────────────────────────────────────────────────────────
SOURCE_LATENCY = Histogram(
    "mr_source_latency_seconds",
    "Remote source request latency in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


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
