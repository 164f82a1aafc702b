"""
Prometheus metrics for mnemo observability.

Provides standardized metrics for the enrichment pipeline, the store
adapters and the model provider gateway.

Usage:
    from mnemo.monitoring.metrics import track_store_operation

    with track_store_operation("pinecone", "upsert"):
        await vector_store.upsert(memory_id, text, metadata)

    # Or manually
    JOB_TRANSITIONS.labels(kind="enrich", state="succeeded").inc()
"""

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Route


# =============================================================================
# Metric Definitions
# =============================================================================

# Pipeline metrics
JOB_TRANSITIONS = Counter(
    "mnemo_job_transitions_total",
    "Enrichment job state transitions",
    ["kind", "state"],
)

JOB_DURATION = Histogram(
    "mnemo_job_duration_seconds",
    "Duration of a dispatched batch in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

QUEUE_DEPTH = Gauge(
    "mnemo_queue_depth",
    "Jobs waiting in the enrichment queue",
)

# Store metrics
STORE_OPERATIONS = Counter(
    "mnemo_store_operations_total",
    "Total store adapter operations",
    ["store", "operation", "status"],
)

STORE_LATENCY = Histogram(
    "mnemo_store_latency_seconds",
    "Latency of store adapter operations",
    ["store", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Provider metrics
PROVIDER_CALLS = Counter(
    "mnemo_provider_calls_total",
    "Total model provider calls",
    ["provider", "operation", "status"],
)

PROVIDER_LATENCY = Histogram(
    "mnemo_provider_latency_seconds",
    "Latency of model provider calls",
    ["provider", "operation"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

# Backend selector metrics
BACKEND_UPGRADES = Counter(
    "mnemo_backend_upgrades_total",
    "Embedded to networked upgrade attempts",
    ["outcome"],
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    "mnemo_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service"],
)

CIRCUIT_BREAKER_FAILURES = Counter(
    "mnemo_circuit_breaker_failures_total",
    "Total failures recorded by circuit breakers",
    ["service"],
)


# =============================================================================
# Tracking Context Managers
# =============================================================================


@contextmanager
def _timed(counter: Counter, histogram: Histogram, **labels: str) -> Generator[None, None, None]:
    start_time = time.perf_counter()
    outcome = "success"
    try:
        yield
    except Exception:
        outcome = "error"
        raise
    finally:
        counter.labels(status=outcome, **labels).inc()
        histogram.labels(**labels).observe(time.perf_counter() - start_time)


def track_store_operation(store: str, operation: str):
    """
    Count and time one store adapter operation.

    Usage:
        with track_store_operation("neo4j", "upsert_node"):
            await graph.upsert_node(memory_id, attrs)
    """
    return _timed(STORE_OPERATIONS, STORE_LATENCY, store=store, operation=operation)


def track_provider_call(provider: str, operation: str):
    """Count and time one model provider call."""
    return _timed(PROVIDER_CALLS, PROVIDER_LATENCY, provider=provider, operation=operation)


def record_job_transition(kind: str, state: str) -> None:
    """Count a job entering a new state."""
    JOB_TRANSITIONS.labels(kind=kind, state=state).inc()


def update_queue_depth(depth: int) -> None:
    QUEUE_DEPTH.set(depth)


def record_backend_upgrade(outcome: str) -> None:
    """Count an upgrade attempt ("succeeded", "failed", "skipped")."""
    BACKEND_UPGRADES.labels(outcome=outcome).inc()


def update_circuit_breaker_state(service: str, state: str) -> None:
    """
    Update circuit breaker state gauge.

    Args:
        service: Service name
        state: Circuit state ("closed", "half_open", "open")
    """
    state_map = {"closed": 0, "half_open": 1, "open": 2}
    CIRCUIT_BREAKER_STATE.labels(service=service).set(state_map.get(state, 0))


def record_circuit_breaker_failure(service: str) -> None:
    """Record a circuit breaker failure."""
    CIRCUIT_BREAKER_FAILURES.labels(service=service).inc()


# =============================================================================
# Metrics Endpoint
# =============================================================================


async def metrics_endpoint(request) -> Response:
    """Prometheus metrics endpoint handler."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


def get_metrics_app() -> Starlette:
    """
    Get a Starlette app for serving metrics.

    Mount this at /metrics in your main app:
        from mnemo.monitoring.metrics import get_metrics_app
        app.mount("/metrics", get_metrics_app())
    """
    return Starlette(
        routes=[
            Route("/", metrics_endpoint),
        ]
    )
