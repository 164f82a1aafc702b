"""Pydantic models for mnemo core entities."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class MemoryStatus(str, Enum):
    """Enrichment status of a memory."""
    PENDING = "pending-enrichment"
    ENRICHED = "enriched"
    FAILED = "failed"


class ClassificationLabel(str, Enum):
    """Closed set of classification labels produced by enrichment."""
    TECHNICAL = "technical"
    EMOTIONAL = "emotional"
    PROCEDURAL = "procedural"
    FACTUAL = "factual"
    OTHER = "other"


class RelationKind(str, Enum):
    """Closed set of relation kinds between two memories."""
    RELATED_TO = "related_to"
    ELABORATES = "elaborates"
    DEPENDS_ON = "depends_on"
    CONTRADICTS = "contradicts"
    SAME_TOPIC = "same_topic"


class BackendKind(str, Enum):
    """Deployment kind of a store."""
    EMBEDDED = "embedded"
    NETWORKED = "networked"


class SearchSource(str, Enum):
    """Stores that can contribute search results, in ranking order."""
    RELATIONAL = "relational"
    VECTOR = "vector"
    GRAPH = "graph"


SOURCE_RANK: dict[SearchSource, int] = {
    SearchSource.RELATIONAL: 0,
    SearchSource.VECTOR: 1,
    SearchSource.GRAPH: 2,
}


# =============================================================================
# Base Models
# =============================================================================


class BaseEntity(BaseModel):
    """Base model with common configuration and conversion helpers."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    def to_metadata(self) -> dict[str, Any]:
        """Flatten to primitive values for vector/graph metadata.

        Neither Pinecone nor Neo4j accept datetimes, enums or nested dicts.
        """
        result: dict[str, Any] = {}
        for key, value in self.model_dump().items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, (dict, list)) or value is None:
                continue
            else:
                result[key] = value
        return result


# =============================================================================
# Core Entity Models
# =============================================================================


class Memory(BaseEntity):
    """A stored unit of text. The relational store is its system of record."""

    id: str = Field(default_factory=new_id)
    category: str = Field(..., min_length=1)
    topic: str = Field(default="")
    content: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status: MemoryStatus = MemoryStatus.PENDING
    vector_indexed: bool = False
    graph_indexed: bool = False
    enrichment_attempts: int = 0
    index_attempts: int = 0
    last_error: Optional[str] = None
    deleted: bool = False
    purged: bool = False

    @field_validator("category")
    @classmethod
    def normalize_category(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("category must not be blank")
        return value

    def index_metadata(self, label: Optional[str] = None) -> dict[str, Any]:
        """Metadata attached to this memory's vector and graph entries."""
        metadata = {
            "memory_id": self.id,
            "category": self.category,
            "topic": self.topic,
            "created_at": self.created_at.isoformat(),
        }
        if label:
            metadata["label"] = label
        return metadata


class Relation(BaseModel):
    """A detected relationship from one memory to another."""

    target_id: str
    kind: RelationKind = RelationKind.RELATED_TO
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class EnrichmentResult(BaseEntity):
    """Immutable output of one enrichment run for one memory."""

    id: str = Field(default_factory=new_id)
    memory_id: str
    label: ClassificationLabel
    concepts: list[str] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provider: str
    model: str
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True, populate_by_name=True, frozen=True)

    @field_validator("concepts")
    @classmethod
    def dedupe_concepts(cls, value: list[str]) -> list[str]:
        seen: dict[str, str] = {}
        for concept in value:
            cleaned = concept.strip()
            if cleaned and cleaned.lower() not in seen:
                seen[cleaned.lower()] = cleaned
        return sorted(seen.values(), key=str.lower)


class BackendHealth(BaseModel):
    """Live reachability snapshot of one store or provider."""

    name: str
    kind: BackendKind
    reachable: bool
    configured: bool = True
    checked_at: datetime = Field(default_factory=utcnow)
    latency_ms: Optional[float] = None
    error: Optional[str] = None


# =============================================================================
# Search Models
# =============================================================================


class SearchHit(BaseModel):
    """One merged search result."""

    memory: Memory
    source: SearchSource
    sources: list[SearchSource] = Field(default_factory=list)
    score: float = 0.0


class SourceStatus(BaseModel):
    """Outcome of querying one search source."""

    source: SearchSource
    requested: bool = True
    available: bool = True
    count: int = 0
    error: Optional[str] = None


class SearchResponse(BaseModel):
    """Merged results plus per-source availability."""

    query: str
    hits: list[SearchHit] = Field(default_factory=list)
    sources: list[SourceStatus] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.hits)


class MemoryDetail(BaseModel):
    """A memory with its enrichment history."""

    memory: Memory
    enrichments: list[EnrichmentResult] = Field(default_factory=list)


class RelatedMemories(BaseModel):
    """A memory and the memories linked to it in the graph store."""

    memory: Memory
    depth: int
    related: list[Memory] = Field(default_factory=list)
    graph_available: bool = True
    error: Optional[str] = None


class MemoryStats(BaseModel):
    """Aggregate counts from the relational store."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)
    deleted: int = 0
    consistency_gaps: int = 0


# =============================================================================
# Operational Models
# =============================================================================


class SelectorState(str, Enum):
    """Relational backend selector states."""
    EMBEDDED_ACTIVE = "embedded-active"
    UPGRADING = "upgrading"
    NETWORKED_ACTIVE = "networked-active"


class UpgradeResult(BaseModel):
    """Outcome of an embedded -> networked upgrade attempt."""

    success: bool
    state: SelectorState
    active_backend: BackendKind
    step: Optional[str] = None
    error: Optional[str] = None
    rows_copied: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class SweepReport(BaseModel):
    """Outcome of one reconciliation sweep."""

    scanned: int = 0
    enrich_enqueued: int = 0
    index_enqueued: int = 0
    purge_enqueued: int = 0
    consistency_gaps: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class SystemStatus(BaseModel):
    """Operator view of the whole system."""

    selector_state: SelectorState
    active_backend: BackendKind
    fault: Optional[str] = None
    stores: list[BackendHealth] = Field(default_factory=list)
    provider: Optional[BackendHealth] = None
    queue_depth: int = 0
    jobs: dict[str, int] = Field(default_factory=dict)
    memories: dict[str, int] = Field(default_factory=dict)
    consistency_gaps: int = 0
    last_sweep: Optional[SweepReport] = None
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def failed_jobs(self) -> int:
        return self.jobs.get("failed", 0)
