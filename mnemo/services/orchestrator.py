"""
Memory orchestrator.

Single entry point for callers. Saves are authoritative once the relational
write succeeds; enrichment, indexing and purging happen behind the job queue
and never block or fail a save or a search.

Usage:
    orchestrator = MemoryOrchestrator(selector, queue, reconciler, provider, settings, vector, graph)
    memory = await orchestrator.save("Use uv for installs", category="tooling")
    response = await orchestrator.search("uv")
    status = await orchestrator.status()
"""

import asyncio
from typing import Iterable, Optional

import structlog

from mnemo.config.settings import Settings
from mnemo.core.exceptions import MemoryNotFoundError, MnemoError
from mnemo.llm.base import ModelProvider
from mnemo.models.schemas import (
    SOURCE_RANK,
    BackendHealth,
    BackendKind,
    Memory,
    MemoryDetail,
    MemoryStats,
    MemoryStatus,
    RelatedMemories,
    SearchHit,
    SearchResponse,
    SearchSource,
    SourceStatus,
    SweepReport,
    SystemStatus,
    UpgradeResult,
)
from mnemo.pipeline.jobs import JobKind, JobQueue
from mnemo.pipeline.reconciler import ReconciliationSweep
from mnemo.storage.base import GraphStore, VectorStore
from mnemo.storage.selector import BackendSelector

logger = structlog.get_logger(__name__)

MAX_SEARCH_LIMIT = 100
MAX_RELATED_DEPTH = 5


class MemoryOrchestrator:
    """Save, search, move and inspect memories across all stores."""

    def __init__(
        self,
        selector: BackendSelector,
        queue: JobQueue,
        reconciler: ReconciliationSweep,
        provider: Optional[ModelProvider],
        settings: Settings,
        vector: Optional[VectorStore] = None,
        graph: Optional[GraphStore] = None,
    ) -> None:
        self._selector = selector
        self._queue = queue
        self._reconciler = reconciler
        self._provider = provider
        self._settings = settings
        self._vector = vector
        self._graph = graph

    # =========================================================================
    # Writes
    # =========================================================================

    async def save(self, content: str, category: str, topic: Optional[str] = None) -> Memory:
        """
        Persist a memory and schedule its enrichment.

        Raises:
            ValueError: If content or category is blank.
            StoreWriteError: If the relational write fails. Nothing is enqueued.
        """
        memory = Memory(content=content, category=category, topic=(topic or "").strip())
        async with self._selector.cell.use() as store:
            await store.write(memory)
        await self._queue.enqueue([memory.id], JobKind.ENRICH)
        logger.info("memory_saved", memory_id=memory.id, category=memory.category)
        return memory

    async def update(self, memory_id: str, content: str, topic: Optional[str] = None) -> Memory:
        """Replace a memory's text; it goes back to pending and is enriched again."""
        async with self._selector.cell.use() as store:
            memory = await store.update_content(memory_id, content, topic)
        await self._queue.enqueue([memory_id], JobKind.ENRICH)
        return memory

    async def move(self, memory_id: str, category: str) -> Memory:
        async with self._selector.cell.use() as store:
            memory = await store.move(memory_id, category)
        # Index metadata carries the category
        if memory.status == MemoryStatus.ENRICHED:
            await self._queue.enqueue([memory_id], JobKind.INDEX)
        return memory

    async def delete(self, memory_id: str) -> Memory:
        """Tombstone a memory; vector and graph entries are purged by a job."""
        async with self._selector.cell.use() as store:
            memory = await store.soft_delete(memory_id)
        await self._queue.enqueue([memory_id], JobKind.PURGE)
        logger.info("memory_deleted", memory_id=memory_id)
        return memory

    async def requeue(self, memory_id: str) -> Memory:
        """
        Re-enrich a memory from scratch.

        Clears failed status and exhausted index attempts, so memories that
        the pipeline gave up on, or that were reported as consistency gaps,
        go through enrichment and both index legs again.
        """
        async with self._selector.cell.use() as store:
            await store.reset_index_attempts(memory_id)
            await store.mark_status(memory_id, MemoryStatus.PENDING)
            memory = await store.read(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        await self._queue.enqueue([memory_id], JobKind.ENRICH)
        logger.info("memory_requeued", memory_id=memory_id)
        return memory

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, memory_id: str) -> MemoryDetail:
        async with self._selector.cell.use() as store:
            memory = await store.read(memory_id)
            if memory is None:
                raise MemoryNotFoundError(memory_id)
            enrichments = await store.list_enrichments(memory_id)
        return MemoryDetail(memory=memory, enrichments=enrichments)

    async def recall_category(self, category: str, limit: int = 50) -> list[Memory]:
        if not category.strip():
            raise ValueError("category must not be blank")
        async with self._selector.cell.use() as store:
            return await store.list_by_category(category, max(1, min(limit, MAX_SEARCH_LIMIT)))

    async def recent(self, limit: int = 20) -> list[Memory]:
        async with self._selector.cell.use() as store:
            return await store.list_recent(max(1, min(limit, MAX_SEARCH_LIMIT)))

    async def related(self, memory_id: str, depth: int = 1, limit: int = 20) -> RelatedMemories:
        """
        A memory plus its graph neighborhood, resolved against the relational store.

        Without a reachable graph store the memory is still returned, with
        ``graph_available`` false.
        """
        if not 1 <= depth <= MAX_RELATED_DEPTH:
            raise ValueError(f"depth must be between 1 and {MAX_RELATED_DEPTH}")
        async with self._selector.cell.use() as store:
            memory = await store.read(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)

        if self._graph is None:
            return RelatedMemories(memory=memory, depth=depth, graph_available=False, error="not configured")
        try:
            neighbor_ids = await self._graph.neighborhood(memory_id, depth=depth)
        except MnemoError as e:
            logger.warning("related_lookup_unavailable", memory_id=memory_id, error=e.message)
            return RelatedMemories(memory=memory, depth=depth, graph_available=False, error=e.message)

        neighbor_ids = [neighbor for neighbor in neighbor_ids if neighbor != memory_id][:limit]
        if not neighbor_ids:
            return RelatedMemories(memory=memory, depth=depth)
        async with self._selector.cell.use() as store:
            live = {found.id: found for found in await store.read_many(neighbor_ids)}
        # Tombstoned or unknown graph nodes are dropped
        related = [live[neighbor] for neighbor in neighbor_ids if neighbor in live]
        return RelatedMemories(memory=memory, depth=depth, related=related)

    async def list_categories(self) -> dict[str, int]:
        async with self._selector.cell.use() as store:
            return await store.list_categories()

    async def stats(self) -> MemoryStats:
        async with self._selector.cell.use() as store:
            counts = await store.count_by_status()
            categories = await store.list_categories()
        deleted = counts.pop("deleted", 0)
        return MemoryStats(
            total=sum(counts.values()),
            by_status=counts,
            by_category=categories,
            deleted=deleted,
            consistency_gaps=len(self._reconciler.gaps),
        )

    async def search(
        self,
        query: str,
        sources: Optional[Iterable[SearchSource]] = None,
        limit: int = 20,
    ) -> SearchResponse:
        """
        Search every requested source and merge the hits.

        Hits are ranked relational first, then vector, then graph, and
        deduplicated by memory id (a hit keeps its best tier and lists every
        source that found it). A source that is not configured or fails is
        reported in ``sources`` rather than raised, except the relational
        store: without the system of record there is nothing to return.
        """
        query = query.strip()
        if not query:
            raise ValueError("query must not be blank")
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))
        requested = set(sources) if sources else set(SearchSource)

        statuses: dict[SearchSource, SourceStatus] = {}
        found: dict[SearchSource, list[tuple[str, float]]] = {}
        relational_hits: dict[str, Memory] = {}

        if SearchSource.RELATIONAL in requested:
            async with self._selector.cell.use() as store:
                pairs = await store.search(query, limit)
            found[SearchSource.RELATIONAL] = [(memory.id, score) for memory, score in pairs]
            relational_hits = {memory.id: memory for memory, _ in pairs}
            statuses[SearchSource.RELATIONAL] = SourceStatus(
                source=SearchSource.RELATIONAL, count=len(pairs)
            )

        lookups = []
        if SearchSource.VECTOR in requested:
            lookups.append((SearchSource.VECTOR, self._vector_lookup(query, limit)))
        if SearchSource.GRAPH in requested:
            lookups.append((SearchSource.GRAPH, self._graph_lookup(query, limit)))
        results = await asyncio.gather(*(coro for _, coro in lookups))
        for (source, _), (status, pairs) in zip(lookups, results):
            statuses[source] = status
            found[source] = pairs

        for source in SearchSource:
            if source not in requested:
                statuses[source] = SourceStatus(source=source, requested=False, available=False)

        hits = await self._merge(found, relational_hits)
        return SearchResponse(
            query=query,
            hits=hits[:limit],
            sources=[statuses[source] for source in SearchSource],
        )

    async def _vector_lookup(self, query: str, limit: int) -> tuple[SourceStatus, list[tuple[str, float]]]:
        if self._vector is None:
            return SourceStatus(source=SearchSource.VECTOR, available=False, error="not configured"), []
        try:
            pairs = await self._vector.query_similar(query, limit)
        except MnemoError as e:
            logger.warning("search_source_unavailable", source="vector", error=e.message)
            return SourceStatus(source=SearchSource.VECTOR, available=False, error=e.message), []
        return SourceStatus(source=SearchSource.VECTOR, count=len(pairs)), pairs

    async def _graph_lookup(self, query: str, limit: int) -> tuple[SourceStatus, list[tuple[str, float]]]:
        if self._graph is None:
            return SourceStatus(source=SearchSource.GRAPH, available=False, error="not configured"), []
        try:
            ids = await self._graph.search_concepts(query, limit)
        except MnemoError as e:
            logger.warning("search_source_unavailable", source="graph", error=e.message)
            return SourceStatus(source=SearchSource.GRAPH, available=False, error=e.message), []
        # Graph matches are unscored; keep their order
        pairs = [(memory_id, 0.0) for memory_id in ids]
        return SourceStatus(source=SearchSource.GRAPH, count=len(pairs)), pairs

    async def _merge(
        self,
        found: dict[SearchSource, list[tuple[str, float]]],
        relational_hits: dict[str, Memory],
    ) -> list[SearchHit]:
        hits: dict[str, SearchHit] = {}
        order: list[str] = []
        for source in sorted(found, key=SOURCE_RANK.__getitem__):
            for memory_id, score in found[source]:
                hit = hits.get(memory_id)
                if hit is None:
                    order.append(memory_id)
                    hits[memory_id] = SearchHit(
                        memory=relational_hits.get(memory_id) or Memory.model_construct(id=memory_id),
                        source=source,
                        sources=[source],
                        score=score,
                    )
                elif source not in hit.sources:
                    hit.sources.append(source)

        # Vector/graph ids are resolved against the system of record; tombstoned
        # or unknown ids are dropped.
        unresolved = [memory_id for memory_id in order if memory_id not in relational_hits]
        if unresolved:
            async with self._selector.cell.use() as store:
                live = {memory.id: memory for memory in await store.read_many(unresolved)}
            for memory_id in unresolved:
                if memory_id in live:
                    hits[memory_id].memory = live[memory_id]
                else:
                    del hits[memory_id]
        return [hits[memory_id] for memory_id in order if memory_id in hits]

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def status(self) -> SystemStatus:
        """Snapshot of every backend and the pipeline. Never triggers an upgrade."""
        active = await self._selector.check_active()
        checks = []
        if self._vector is not None:
            checks.append(self._vector.health_check())
        if self._graph is not None:
            checks.append(self._graph.health_check())
        store_health: list[BackendHealth] = [active, *await asyncio.gather(*checks)]
        if self._provider is not None:
            provider_health = await self._provider.health_check()
        else:
            provider_health = BackendHealth(
                name=self._settings.llm_provider,
                kind=BackendKind.EMBEDDED if self._settings.llm_provider == "ollama" else BackendKind.NETWORKED,
                reachable=False,
                configured=False,
                error="not configured",
            )

        memories: dict[str, int] = {}
        if active.reachable:
            try:
                async with self._selector.cell.use() as store:
                    memories = await store.count_by_status()
            except MnemoError as e:
                logger.warning("status_counts_unavailable", error=e.message)

        return SystemStatus(
            selector_state=self._selector.state,
            active_backend=self._selector.active_kind,
            fault=self._selector.fault,
            stores=store_health,
            provider=provider_health,
            queue_depth=self._queue.depth,
            jobs=self._queue.counts_by_state(),
            memories=memories,
            consistency_gaps=len(self._reconciler.gaps),
            last_sweep=self._reconciler.last_report,
        )

    async def attempt_upgrade(self) -> UpgradeResult:
        return await self._selector.attempt_upgrade()

    async def reconcile(self) -> SweepReport:
        return await self._reconciler.sweep()
