"""Operator endpoints: system status, backend upgrade, reconciliation."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from mnemo.api.dependencies import get_container, get_orchestrator
from mnemo.core.container import DependencyContainer
from mnemo.models import SweepReport, SystemStatus, UpgradeResult
from mnemo.pipeline.jobs import JobState
from mnemo.services.orchestrator import MemoryOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/status", tags=["Status"])


@router.get(
    "",
    response_model=SystemStatus,
    summary="System status",
)
async def get_status(
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> SystemStatus:
    """Backends, queue, memory counts and consistency gaps. Never upgrades."""
    return await orchestrator.status()


@router.post(
    "/upgrade",
    response_model=UpgradeResult,
    summary="Upgrade to the networked relational backend",
)
async def upgrade_backend(
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> UpgradeResult:
    """
    Move from embedded SQLite to PostgreSQL.

    Failures are reported in the body (``success: false`` and the failed
    ``step``); the embedded backend stays active.
    """
    result = await orchestrator.attempt_upgrade()
    logger.info("upgrade_requested", success=result.success, step=result.step)
    return result


@router.post(
    "/reconcile",
    response_model=SweepReport,
    summary="Run a reconciliation sweep now",
)
async def reconcile(
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> SweepReport:
    return await orchestrator.reconcile()


@router.get(
    "/jobs",
    summary="Recently finished jobs",
)
async def recent_jobs(
    state: Optional[JobState] = Query(None, description="Only jobs in this state"),
    limit: int = Query(50, ge=1, le=500),
    container: DependencyContainer = Depends(get_container),
) -> dict:
    jobs = container.queue.recent(state=state, limit=limit)
    return {"jobs": [job.to_dict() for job in jobs], "total": len(jobs)}
