"""
Data models for mnemo.

Pydantic models shared by the storage adapters, the enrichment pipeline,
the orchestrator and the HTTP surface.
"""

from mnemo.models.schemas import (
    SOURCE_RANK,
    BackendHealth,
    BackendKind,
    ClassificationLabel,
    EnrichmentResult,
    Memory,
    MemoryDetail,
    MemoryStats,
    MemoryStatus,
    RelatedMemories,
    Relation,
    RelationKind,
    SearchHit,
    SearchResponse,
    SearchSource,
    SelectorState,
    SourceStatus,
    SweepReport,
    SystemStatus,
    UpgradeResult,
    new_id,
    utcnow,
)

__all__ = [
    "SOURCE_RANK",
    "BackendHealth",
    "BackendKind",
    "ClassificationLabel",
    "EnrichmentResult",
    "Memory",
    "MemoryDetail",
    "MemoryStats",
    "MemoryStatus",
    "RelatedMemories",
    "Relation",
    "RelationKind",
    "SearchHit",
    "SearchResponse",
    "SearchSource",
    "SelectorState",
    "SourceStatus",
    "SweepReport",
    "SystemStatus",
    "UpgradeResult",
    "new_id",
    "utcnow",
]
