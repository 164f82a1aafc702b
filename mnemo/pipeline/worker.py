"""
Enrichment worker.

One long-lived asyncio task drains the JobQueue in batches. For each memory
it classifies the content, extracts relations against recent context,
appends an EnrichmentResult to the relational store, then writes the vector
and graph legs independently. A failed leg only clears that leg's flag; the
reconciliation sweep re-drives it later.
"""

import asyncio
import time
from typing import Optional, Sequence

import structlog

from mnemo.config.settings import Settings
from mnemo.core.exceptions import MemoryNotFoundError, MnemoError, PermanentError
from mnemo.llm.base import Classification, ModelProvider
from mnemo.models.schemas import ClassificationLabel, EnrichmentResult, Memory, MemoryStatus, Relation, RelationKind
from mnemo.monitoring.metrics import JOB_DURATION
from mnemo.pipeline.jobs import Job, JobKind, JobQueue, JobState
from mnemo.storage.base import GraphStore, VectorStore
from mnemo.storage.selector import ConnectionCell
from mnemo.storage.sql_store import SQLRelationalStore

logger = structlog.get_logger(__name__)

SYMMETRIC_KINDS = {RelationKind.RELATED_TO, RelationKind.SAME_TOPIC, RelationKind.CONTRADICTS}


def chunk_text(text: str, max_chars: int) -> list[str]:
    """Split text on whitespace into chunks of at most ``max_chars``."""
    text = text.strip()
    if len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > max_chars:
            chunks.append(current)
            current = word
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def merge_classifications(parts: Sequence[Classification]) -> Classification:
    """Combine per-chunk results: confidence-weighted label vote, union of concepts."""
    if len(parts) == 1:
        return parts[0]

    weights: dict[ClassificationLabel, float] = {}
    for part in parts:
        weights[part.label] = weights.get(part.label, 0.0) + part.confidence
    label = max(weights, key=lambda candidate: weights[candidate])

    concepts: dict[str, str] = {}
    for part in parts:
        for concept in part.concepts:
            concepts.setdefault(concept.lower(), concept)

    return Classification(
        label=label,
        concepts=list(concepts.values()),
        confidence=sum(part.confidence for part in parts) / len(parts),
    )


def is_retryable(error: BaseException) -> bool:
    """Timeouts and retryable mnemo errors retry; permanent and input errors do not."""
    if isinstance(error, (PermanentError, ValueError)):
        return False
    return True


class EnrichmentPipeline:
    """
    Background enrichment worker.

    Usage:
        pipeline = EnrichmentPipeline(cell, provider, queue, settings, vector, graph)
        await pipeline.start()
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        cell: ConnectionCell,
        provider: ModelProvider,
        queue: JobQueue,
        settings: Settings,
        vector: Optional[VectorStore] = None,
        graph: Optional[GraphStore] = None,
    ) -> None:
        self._cell = cell
        self._provider = provider
        self._queue = queue
        self._settings = settings
        self._vector = vector
        self._graph = graph
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="mnemo-enrichment-worker")
        logger.info("pipeline_started", provider=self._provider.name)

    async def stop(self, timeout: float = 30.0) -> None:
        """Close the queue and let the current batch finish."""
        await self._queue.close()
        if self._task is None:
            return
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("pipeline_stopped")

    async def _run(self) -> None:
        while not self._queue.closed:
            batch = await self._queue.next_batch(
                self._settings.pipeline_batch_size,
                self._settings.pipeline_batch_window_seconds,
            )
            if batch:
                await self.process_batch(batch)

    async def process_batch(self, jobs: list[Job]) -> None:
        """Execute one batch of same-kind jobs. Never raises."""
        kind = jobs[0].kind
        start = time.perf_counter()
        try:
            if kind == JobKind.ENRICH:
                await self._process_enrich(jobs)
            elif kind == JobKind.INDEX:
                for job in jobs:
                    await self._run_job(job, self._index_job)
            else:
                for job in jobs:
                    await self._run_job(job, self._purge_job)
        except Exception as e:
            logger.exception("batch_failed", kind=kind.value, error=str(e))
            for job in jobs:
                if job.state == JobState.RUNNING:
                    await self._fail(job, e)
        finally:
            JOB_DURATION.labels(kind=kind.value).observe(time.perf_counter() - start)

    async def _run_job(self, job: Job, handler) -> None:
        try:
            await handler(job)
        except Exception as e:
            await self._fail(job, e)
        else:
            await self._queue.complete(job)

    async def _fail(self, job: Job, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        state = await self._queue.fail(job, message, retryable=is_retryable(error))
        if state != JobState.FAILED or job.kind != JobKind.ENRICH:
            return
        for memory_id in job.pending_ids:
            try:
                async with self._cell.use() as store:
                    await store.mark_status(memory_id, MemoryStatus.FAILED, error=message, count_attempt=True)
            except MemoryNotFoundError:
                continue
            except Exception as e:
                # Left pending; the next sweep re-enqueues it
                logger.error("memory_status_update_failed", memory_id=memory_id, error=str(e))

    # -------------------------------------------------------------------------
    # Enrich
    # -------------------------------------------------------------------------

    async def _process_enrich(self, jobs: list[Job]) -> None:
        wanted = list(dict.fromkeys(memory_id for job in jobs for memory_id in job.pending_ids))
        async with self._cell.use() as store:
            memories = {memory.id: memory for memory in await store.read_many(wanted)}

        classifications: dict[str, Classification] = {}
        errors: dict[str, BaseException] = {}
        for job in jobs:
            for memory_id in job.pending_ids:
                if memory_id not in memories or memory_id in classifications:
                    continue
                try:
                    classifications[memory_id] = await self._classify(memories[memory_id])
                except Exception as e:
                    logger.warning("classification_failed", memory_id=memory_id, error=str(e))
                    errors[job.id] = e
                    break

        healthy = [job for job in jobs if job.id not in errors]
        classified = [
            memories[memory_id]
            for memory_id in dict.fromkeys(
                memory_id for job in healthy for memory_id in job.pending_ids
            )
            if memory_id in classifications
        ]
        relations: dict[str, list[Relation]] = {}
        if classified:
            try:
                relations = await self._extract_relations(classified)
            except Exception as e:
                logger.warning("relation_extraction_failed", memories=len(classified), error=str(e))
                for job in healthy:
                    errors[job.id] = e

        for job in jobs:
            if job.id in errors:
                await self._fail(job, errors[job.id])
                continue
            try:
                for memory_id in job.pending_ids:
                    memory = memories.get(memory_id)
                    if memory is None:
                        # Deleted or unknown; nothing to enrich
                        job.completed_ids.add(memory_id)
                        continue
                    classification = classifications[memory_id]
                    result = EnrichmentResult(
                        memory_id=memory_id,
                        label=classification.label,
                        concepts=classification.concepts,
                        relations=relations.get(memory_id, []),
                        confidence=classification.confidence,
                        provider=self._provider.name,
                        model=self._provider.model,
                    )
                    try:
                        async with self._cell.use() as store:
                            await store.save_enrichment(result)
                    except MemoryNotFoundError:
                        job.completed_ids.add(memory_id)
                        continue
                    # Committed; a retry must not append a second result
                    job.completed_ids.add(memory_id)
                    logger.info(
                        "memory_enriched",
                        memory_id=memory_id,
                        label=result.label.value,
                        concepts=len(result.concepts),
                        relations=len(result.relations),
                    )
                    failed_legs = await self._index(memory, result)
                    if failed_legs:
                        job.failed_legs[memory_id] = failed_legs
            except Exception as e:
                await self._fail(job, e)
            else:
                await self._queue.complete(job)

    async def _classify(self, memory: Memory) -> Classification:
        text = f"{memory.topic}\n{memory.content}" if memory.topic else memory.content
        parts = []
        for chunk in chunk_text(text, self._provider.max_input_chars):
            parts.append(
                await asyncio.wait_for(
                    self._provider.classify(chunk),
                    timeout=self._settings.provider_timeout_seconds,
                )
            )
        return merge_classifications(parts)

    async def _extract_relations(self, memories: list[Memory]) -> dict[str, list[Relation]]:
        """Relations for each memory in ``memories``, strongest first."""
        batch_ids = {memory.id for memory in memories}
        async with self._cell.use() as store:
            context = await store.recent_enriched(
                self._settings.relation_context_size,
                exclude=list(batch_ids),
            )
        candidates_pool = memories + context
        if len(candidates_pool) < 2:
            return {}

        candidates = await asyncio.wait_for(
            self._provider.extract_relations(candidates_pool),
            timeout=self._settings.provider_timeout_seconds,
        )

        relations: dict[str, dict[tuple[str, RelationKind], Relation]] = {}
        for candidate in candidates:
            if candidate.confidence < self._settings.relation_min_confidence:
                continue
            if candidate.source_id in batch_ids:
                owner, target = candidate.source_id, candidate.target_id
            elif candidate.target_id in batch_ids and candidate.kind in SYMMETRIC_KINDS:
                owner, target = candidate.target_id, candidate.source_id
            else:
                continue
            key = (target, candidate.kind)
            existing = relations.setdefault(owner, {}).get(key)
            if existing is None or existing.confidence < candidate.confidence:
                relations[owner][key] = Relation(
                    target_id=target,
                    kind=candidate.kind,
                    confidence=candidate.confidence,
                )

        return {
            owner: sorted(found.values(), key=lambda relation: relation.confidence, reverse=True)
            for owner, found in relations.items()
        }

    # -------------------------------------------------------------------------
    # Store legs
    # -------------------------------------------------------------------------

    async def _index(
        self,
        memory: Memory,
        result: EnrichmentResult,
        vector: bool = True,
        graph: bool = True,
    ) -> list[str]:
        """Write the vector and graph legs independently. Returns the failed legs."""
        timeout = self._settings.store_timeout_seconds
        failed: list[str] = []
        errors: list[str] = []
        vector_ok: Optional[bool] = None
        graph_ok: Optional[bool] = None

        if self._vector is not None and vector:
            text = f"{memory.topic}\n{memory.content}" if memory.topic else memory.content
            try:
                await asyncio.wait_for(
                    self._vector.upsert(memory.id, text, memory.index_metadata(result.label.value)),
                    timeout=timeout,
                )
                vector_ok = True
            except Exception as e:
                vector_ok = False
                failed.append("vector")
                errors.append(f"vector: {str(e) or type(e).__name__}")
                logger.warning("vector_leg_failed", memory_id=memory.id, error=str(e))

        if self._graph is not None and graph:
            try:
                await asyncio.wait_for(self._write_graph(memory, result), timeout=timeout)
                graph_ok = True
            except Exception as e:
                graph_ok = False
                failed.append("graph")
                errors.append(f"graph: {str(e) or type(e).__name__}")
                logger.warning("graph_leg_failed", memory_id=memory.id, error=str(e))

        if vector_ok is not None or graph_ok is not None:
            try:
                async with self._cell.use() as store:
                    await store.set_index_flags(
                        memory.id,
                        vector=vector_ok,
                        graph=graph_ok,
                        count_attempt=bool(failed),
                        error="; ".join(errors) if errors else None,
                    )
            except MnemoError as e:
                # Flags stay false; the reconciliation sweep re-drives both legs
                logger.warning("index_flags_update_failed", memory_id=memory.id, error=e.message)
                failed = [leg for leg, ok in (("vector", vector_ok), ("graph", graph_ok)) if ok is not None]
        return failed

    async def _write_graph(self, memory: Memory, result: EnrichmentResult) -> None:
        await self._graph.upsert_node(memory.id, memory.index_metadata(result.label.value))
        await self._graph.upsert_concepts(memory.id, result.concepts)
        for relation in result.relations:
            await self._graph.upsert_edge(
                memory.id,
                relation.target_id,
                relation.kind.value,
                relation.confidence,
            )

    async def _index_job(self, job: Job) -> None:
        """Re-issue the incomplete legs from each memory's latest result."""
        for memory_id in job.pending_ids:
            async with self._cell.use() as store:
                memory = await store.read(memory_id)
                result = await store.latest_enrichment(memory_id) if memory else None
            if memory is None or result is None or memory.status != MemoryStatus.ENRICHED:
                job.completed_ids.add(memory_id)
                continue
            failed_legs = await self._index(
                memory,
                result,
                vector=not memory.vector_indexed,
                graph=not memory.graph_indexed,
            )
            if failed_legs:
                job.failed_legs[memory_id] = failed_legs
            job.completed_ids.add(memory_id)

    async def _purge_job(self, job: Job) -> None:
        """Remove tombstoned memories from the secondary stores."""
        timeout = self._settings.store_timeout_seconds
        for memory_id in job.pending_ids:
            async with self._cell.use() as store:
                memory = await store.read(memory_id, include_deleted=True)
            if memory is None or not memory.deleted or memory.purged:
                job.completed_ids.add(memory_id)
                continue

            failed: list[str] = []
            if self._vector is not None:
                try:
                    await asyncio.wait_for(self._vector.delete(memory_id), timeout=timeout)
                except Exception as e:
                    failed.append("vector")
                    logger.warning("vector_purge_failed", memory_id=memory_id, error=str(e))
            if self._graph is not None:
                try:
                    await asyncio.wait_for(self._graph.delete_node(memory_id), timeout=timeout)
                except Exception as e:
                    failed.append("graph")
                    logger.warning("graph_purge_failed", memory_id=memory_id, error=str(e))

            if failed:
                job.failed_legs[memory_id] = failed
            else:
                async with self._cell.use() as store:
                    await store.mark_purged(memory_id)
                logger.info("memory_purged", memory_id=memory_id)
            job.completed_ids.add(memory_id)

    # -------------------------------------------------------------------------
    # Upgrade confirmation
    # -------------------------------------------------------------------------

    async def confirm_store(self, store: SQLRelationalStore) -> bool:
        """Accept a new relational store only if it answers a pipeline query."""
        health = await store.health_check()
        if not health.reachable:
            logger.warning("pipeline_rejected_store", store=store.name, error=health.error)
            return False
        await store.list_reconcilable(limit=1)
        logger.info("pipeline_confirmed_store", store=store.name)
        return True
