"""
Monitoring and observability for mnemo.

Provides Prometheus metrics for the enrichment pipeline, store adapters,
model providers and circuit breakers.

Usage:
    from mnemo.monitoring import track_store_operation, get_metrics_app

    with track_store_operation("neo4j", "upsert_edge"):
        await graph.upsert_edge(a, b, "related_to", 0.8)
"""

from mnemo.monitoring.metrics import (
    BACKEND_UPGRADES,
    CIRCUIT_BREAKER_STATE,
    JOB_TRANSITIONS,
    PROVIDER_CALLS,
    QUEUE_DEPTH,
    STORE_OPERATIONS,
    get_metrics_app,
    record_backend_upgrade,
    record_circuit_breaker_failure,
    record_job_transition,
    track_provider_call,
    track_store_operation,
    update_circuit_breaker_state,
    update_queue_depth,
)

__all__ = [
    # Prometheus metrics
    "BACKEND_UPGRADES",
    "CIRCUIT_BREAKER_STATE",
    "JOB_TRANSITIONS",
    "PROVIDER_CALLS",
    "QUEUE_DEPTH",
    "STORE_OPERATIONS",
    # Context managers
    "track_provider_call",
    "track_store_operation",
    # Helper functions
    "record_backend_upgrade",
    "record_circuit_breaker_failure",
    "record_job_transition",
    "update_circuit_breaker_state",
    "update_queue_depth",
    "get_metrics_app",
]
