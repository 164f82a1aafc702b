"""Memory endpoints for the mnemo API.

Saves return as soon as the relational write commits; enrichment status is
visible on the memory itself (``status``, ``vector_indexed``,
``graph_indexed``).
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from mnemo.api.dependencies import get_orchestrator
from mnemo.api.models import CategoryListResponse, ErrorResponse, MemoryCreate, MemoryMove, MemoryUpdate
from mnemo.models import Memory, MemoryDetail, MemoryStats, RelatedMemories, SearchResponse, SearchSource
from mnemo.services.orchestrator import MAX_RELATED_DEPTH, MAX_SEARCH_LIMIT, MemoryOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/memories", tags=["Memories"])

NOT_FOUND = {404: {"model": ErrorResponse, "description": "Memory not found"}}
UNAVAILABLE = {503: {"model": ErrorResponse, "description": "Relational store unavailable"}}


@router.post(
    "",
    response_model=Memory,
    status_code=201,
    summary="Save a memory",
    responses=UNAVAILABLE,
)
async def save_memory(
    body: MemoryCreate,
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> Memory:
    """
    Save a memory and queue it for enrichment.

    The response has status ``pending-enrichment``. A relational write
    failure returns 503 and nothing is queued.
    """
    return await orchestrator.save(body.content, body.category, body.topic)


@router.get(
    "/search",
    response_model=SearchResponse,
    summary="Search memories",
)
async def search_memories(
    q: str = Query(..., min_length=1, description="Search text"),
    sources: Optional[list[SearchSource]] = Query(None, description="Sources to query (default: all)"),
    limit: int = Query(20, ge=1, le=MAX_SEARCH_LIMIT),
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> SearchResponse:
    """Merged results; sources that are unavailable are listed, not raised."""
    return await orchestrator.search(q, sources=sources, limit=limit)


@router.get(
    "/categories",
    response_model=CategoryListResponse,
    summary="List categories",
)
async def list_categories(
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> CategoryListResponse:
    categories = await orchestrator.list_categories()
    return CategoryListResponse(categories=categories, total=sum(categories.values()))


@router.get(
    "/categories/{category}",
    response_model=list[Memory],
    summary="List the memories in a category",
)
async def recall_category(
    category: str,
    limit: int = Query(50, ge=1, le=MAX_SEARCH_LIMIT),
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> list[Memory]:
    """Newest first; deleted memories are left out."""
    return await orchestrator.recall_category(category, limit)


@router.get(
    "/recent",
    response_model=list[Memory],
    summary="Most recently saved memories",
)
async def recent_memories(
    limit: int = Query(20, ge=1, le=MAX_SEARCH_LIMIT),
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> list[Memory]:
    return await orchestrator.recent(limit)


@router.get(
    "/stats",
    response_model=MemoryStats,
    summary="Memory statistics",
)
async def memory_stats(
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> MemoryStats:
    return await orchestrator.stats()


@router.get(
    "/{memory_id}",
    response_model=MemoryDetail,
    summary="Get a memory with its enrichment history",
    responses=NOT_FOUND,
)
async def get_memory(
    memory_id: str,
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> MemoryDetail:
    return await orchestrator.get(memory_id)


@router.put(
    "/{memory_id}",
    response_model=Memory,
    summary="Replace a memory's text",
    responses={**NOT_FOUND, **UNAVAILABLE},
)
async def update_memory(
    memory_id: str,
    body: MemoryUpdate,
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> Memory:
    """The memory returns to ``pending-enrichment`` and is enriched again."""
    return await orchestrator.update(memory_id, body.content, body.topic)


@router.get(
    "/{memory_id}/related",
    response_model=RelatedMemories,
    summary="Get a memory with its graph neighborhood",
    responses=NOT_FOUND,
)
async def related_memories(
    memory_id: str,
    depth: int = Query(1, ge=1, le=MAX_RELATED_DEPTH),
    limit: int = Query(20, ge=1, le=MAX_SEARCH_LIMIT),
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> RelatedMemories:
    return await orchestrator.related(memory_id, depth=depth, limit=limit)


@router.post(
    "/{memory_id}/move",
    response_model=Memory,
    summary="Move a memory to another category",
    responses=NOT_FOUND,
)
async def move_memory(
    memory_id: str,
    body: MemoryMove,
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> Memory:
    return await orchestrator.move(memory_id, body.category)


@router.delete(
    "/{memory_id}",
    response_model=Memory,
    summary="Delete a memory",
    responses=NOT_FOUND,
)
async def delete_memory(
    memory_id: str,
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> Memory:
    """Tombstones the memory; vector and graph entries are purged in the background."""
    return await orchestrator.delete(memory_id)


@router.post(
    "/{memory_id}/requeue",
    response_model=Memory,
    status_code=202,
    summary="Re-run enrichment for a memory",
    responses=NOT_FOUND,
)
async def requeue_memory(
    memory_id: str,
    orchestrator: MemoryOrchestrator = Depends(get_orchestrator),
) -> Memory:
    logger.info("requeue_requested", memory_id=memory_id)
    return await orchestrator.requeue(memory_id)
