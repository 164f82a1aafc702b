"""Health check endpoints for the mnemo API.

Liveness never touches a backend. Readiness only requires the relational
store, since saves and relational search work without the other backends.
"""

import time
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException

from mnemo import __version__
from mnemo.api.dependencies import get_orchestrator, peek_container
from mnemo.api.models import HealthCheckResponse
from mnemo.services.orchestrator import MemoryOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])

# Track server start time for uptime calculation
_server_start_time: Optional[float] = None


def set_server_start_time() -> None:
    """Set the server start time. Called on application startup."""
    global _server_start_time
    _server_start_time = time.time()


def get_uptime_seconds() -> Optional[float]:
    if _server_start_time is None:
        return None
    return time.time() - _server_start_time


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health Check",
    description="Check the health status of the API and its backends.",
)
async def health_check(
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> HealthCheckResponse:
    """
    Report every backend.

    - healthy: every configured backend reachable
    - degraded: relational store reachable, something else is not
    - unhealthy: relational store unreachable or faulted
    """
    snapshot = await orchestrator.status()
    services = {health.name: health.model_dump(mode="json") for health in snapshot.stores}
    if snapshot.provider is not None:
        services[snapshot.provider.name] = snapshot.provider.model_dump(mode="json")

    relational = snapshot.stores[0]
    others = snapshot.stores[1:] + ([snapshot.provider] if snapshot.provider else [])
    if not relational.reachable or snapshot.fault:
        overall_status = "unhealthy"
    elif all(health.reachable for health in others):
        overall_status = "healthy"
    else:
        overall_status = "degraded"

    return HealthCheckResponse(
        status=overall_status,
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        selector_state=snapshot.selector_state.value,
        active_backend=snapshot.active_backend.value,
        fault=snapshot.fault,
        services=services,
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/health/live",
    summary="Liveness Check",
    description="Simple liveness check for container orchestration.",
)
async def liveness() -> dict:
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get(
    "/health/ready",
    summary="Readiness Check",
    description="Check if the service is ready to accept traffic.",
)
async def readiness() -> dict:
    """Returns 200 only if the relational store answers."""
    container = peek_container()
    if container is None or not container.is_initialized:
        raise HTTPException(status_code=503, detail="Service not ready: starting up")

    health = await container.selector.check_active()
    if not health.reachable:
        logger.warning("readiness_failed", store=health.name, error=health.error)
        raise HTTPException(
            status_code=503,
            detail="Service not ready: relational store unavailable",
        )

    return {
        "status": "ready",
        "backend": health.kind.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
