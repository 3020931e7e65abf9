"""Prometheus metrics for the istruct agent.

Exposes engine operation latency and failures plus the depth of the worker
queue. The /metrics endpoint serves these in Prometheus exposition format.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)

logger = logging.getLogger(__name__)


engine_operation_duration = Histogram(
    "istruct_engine_operation_seconds",
    "Duration of engine operations",
    ["operation", "status"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

engine_operation_errors = Counter(
    "istruct_engine_operation_errors_total",
    "Total engine operation errors",
    ["operation", "error"],
)

worker_pending_operations = Gauge(
    "istruct_worker_pending_operations",
    "Operations submitted to the engine worker and not yet finished",
)


@contextmanager
def track_operation(operation: str) -> Iterator[None]:
    """Time one engine operation and count it as an error if it raises."""
    start = time.monotonic()
    status = "success"
    try:
        yield
    except Exception as e:
        status = "error"
        engine_operation_errors.labels(
            operation=operation, error=type(e).__name__,
        ).inc()
        raise
    finally:
        engine_operation_duration.labels(
            operation=operation, status=status,
        ).observe(time.monotonic() - start)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
