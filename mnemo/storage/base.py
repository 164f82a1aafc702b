"""
Store capability interfaces.

The orchestrator and the enrichment pipeline only ever talk to these
protocols. Concrete adapters:

- RelationalStore: SQLRelationalStore (SQLite embedded, PostgreSQL networked)
- VectorStore: PineconeVectorStore
- GraphStore: Neo4jGraphStore
"""

from typing import Any, Optional, Protocol, Sequence, Union, runtime_checkable

from mnemo.models.schemas import BackendHealth, BackendKind, EnrichmentResult, Memory, MemoryStatus


@runtime_checkable
class RelationalStore(Protocol):
    """System of record for memories and enrichment results."""

    name: str
    kind: BackendKind

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def health_check(self) -> BackendHealth: ...

    async def write(self, memory: Memory) -> Memory: ...

    async def read(self, memory_id: str, include_deleted: bool = False) -> Optional[Memory]: ...

    async def read_many(self, memory_ids: Sequence[str]) -> list[Memory]: ...

    async def search(self, text: str, limit: int = 20) -> list[tuple[Memory, float]]: ...

    async def move(self, memory_id: str, category: str) -> Memory: ...

    async def update_content(self, memory_id: str, content: str, topic: Optional[str] = None) -> Memory: ...

    async def list_by_category(self, category: str, limit: int = 50) -> list[Memory]: ...

    async def list_recent(self, limit: int = 20) -> list[Memory]: ...

    async def save_enrichment(self, result: EnrichmentResult) -> None: ...

    async def latest_enrichment(self, memory_id: str) -> Optional[EnrichmentResult]: ...

    async def list_enrichments(self, memory_id: str) -> list[EnrichmentResult]: ...

    async def mark_status(
        self,
        memory_id: str,
        status: MemoryStatus,
        error: Optional[str] = None,
        count_attempt: bool = False,
    ) -> None: ...

    async def set_index_flags(
        self,
        memory_id: str,
        vector: Optional[bool] = None,
        graph: Optional[bool] = None,
        count_attempt: bool = False,
        error: Optional[str] = None,
    ) -> None: ...

    async def reset_index_attempts(self, memory_id: str) -> None: ...

    async def soft_delete(self, memory_id: str) -> Memory: ...

    async def mark_purged(self, memory_id: str) -> None: ...

    async def list_reconcilable(
        self,
        limit: int = 200,
        check_vector: bool = True,
        check_graph: bool = True,
        max_index_attempts: Optional[int] = None,
    ) -> list[Memory]: ...

    async def list_index_gaps(
        self,
        max_attempts: int,
        check_vector: bool = True,
        check_graph: bool = True,
    ) -> list[Memory]: ...

    async def count_by_status(self) -> dict[str, int]: ...

    async def list_categories(self) -> dict[str, int]: ...

    async def recent_enriched(self, limit: int, exclude: Sequence[str] = ()) -> list[Memory]: ...

    async def export_rows(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]: ...

    async def import_rows(
        self,
        memories: list[dict[str, Any]],
        enrichments: list[dict[str, Any]],
    ) -> int: ...


@runtime_checkable
class VectorStore(Protocol):
    """Semantic similarity index keyed by memory id."""

    name: str

    async def upsert(
        self,
        memory_id: str,
        text_or_embedding: Union[str, list[float]],
        metadata: dict[str, Any],
    ) -> None: ...

    async def query_similar(self, text: str, k: int = 10) -> list[tuple[str, float]]: ...

    async def delete(self, memory_id: str) -> None: ...

    async def health_check(self) -> BackendHealth: ...

    async def close(self) -> None: ...


@runtime_checkable
class GraphStore(Protocol):
    """Relationship network between memories and concepts."""

    name: str

    async def upsert_node(self, memory_id: str, attrs: dict[str, Any]) -> None: ...

    async def upsert_edge(
        self,
        from_id: str,
        to_id: str,
        relation_kind: str,
        confidence: float,
    ) -> None: ...

    async def upsert_concepts(self, memory_id: str, concepts: Sequence[str]) -> None: ...

    async def neighborhood(self, memory_id: str, depth: int = 1) -> list[str]: ...

    async def search_concepts(self, text: str, limit: int = 20) -> list[str]: ...

    async def delete_node(self, memory_id: str) -> None: ...

    async def health_check(self) -> BackendHealth: ...

    async def close(self) -> None: ...
