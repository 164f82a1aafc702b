"""
Relational store adapter.

One implementation serves both deployment kinds: an embedded SQLite file
(sqlite+aiosqlite) and a networked PostgreSQL service (postgresql+asyncpg).
It is the system of record for memories and enrichment results; every
failure surfaces to the caller as a mnemo exception.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy import text as sql_text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from mnemo.core.exceptions import BackendUnreachableError, MemoryNotFoundError, StoreWriteError
from mnemo.models.schemas import (
    BackendHealth,
    BackendKind,
    EnrichmentResult,
    Memory,
    MemoryStatus,
    utcnow,
)
from mnemo.monitoring.metrics import track_store_operation
from mnemo.storage.tables import (
    ENRICHMENT_COLUMNS,
    MEMORY_COLUMNS,
    Base,
    EnrichmentRow,
    MemoryRow,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Search scoring: a term found in the topic outranks one found in the body.
TOPIC_MATCH_SCORE = 3.0
CONTENT_MATCH_SCORE = 1.0


class SQLRelationalStore:
    """
    Async SQLAlchemy relational store.

    Usage:
        store = SQLRelationalStore(settings.sqlite_url, BackendKind.EMBEDDED)
        await store.connect()
        await store.write(Memory(category="Debugging", content="..."))
        await store.close()
    """

    def __init__(
        self,
        url: str,
        kind: BackendKind,
        name: Optional[str] = None,
        timeout: float = 10.0,
        pool_size: Optional[int] = None,
        connect_timeout: Optional[float] = None,
        echo: bool = False,
    ) -> None:
        self.url = url
        self.kind = kind
        self.name = name or ("sqlite" if kind == BackendKind.EMBEDDED else "postgres")
        self._timeout = timeout
        self._pool_size = pool_size
        self._connect_timeout = connect_timeout
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _ensure_engine(self) -> AsyncEngine:
        if self._engine is None:
            kwargs: dict[str, Any] = {"echo": self._echo}
            if self.kind == BackendKind.NETWORKED:
                kwargs["pool_pre_ping"] = True
                if self._pool_size:
                    kwargs["pool_size"] = self._pool_size
                if self._connect_timeout:
                    kwargs["connect_args"] = {"timeout": self._connect_timeout}
            self._engine = create_async_engine(self.url, **kwargs)
            self._session_factory = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._engine

    async def connect(self) -> None:
        """Create the engine and the schema if missing."""
        engine = self._ensure_engine()

        async def _create_schema() -> None:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        try:
            await asyncio.wait_for(_create_schema(), timeout=self._timeout)
        except (asyncio.TimeoutError, OSError, SQLAlchemyError) as e:
            raise BackendUnreachableError(
                self.name,
                f"Failed to initialize schema: {e}",
                {"kind": self.kind.value},
            ) from e
        logger.info("relational_store_connected", store=self.name, kind=self.kind.value)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("relational_store_closed", store=self.name)

    async def health_check(self) -> BackendHealth:
        """Run ``SELECT 1``. Never raises."""
        start = time.perf_counter()
        try:
            engine = self._ensure_engine()

            async def _ping() -> None:
                async with engine.connect() as conn:
                    await conn.execute(sql_text("SELECT 1"))

            await asyncio.wait_for(_ping(), timeout=self._timeout)
        except Exception as e:
            return BackendHealth(
                name=self.name,
                kind=self.kind,
                reachable=False,
                error=f"{type(e).__name__}: {e}",
            )
        return BackendHealth(
            name=self.name,
            kind=self.kind,
            reachable=True,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        write: bool = False,
    ) -> T:
        """Run ``work`` in a session with a timeout and normalized errors."""
        self._ensure_engine()

        async def _execute() -> T:
            async with self._session_factory() as session:
                result = await work(session)
                if write:
                    await session.commit()
                return result

        error_type = StoreWriteError if write else BackendUnreachableError
        with track_store_operation(self.name, operation):
            try:
                return await asyncio.wait_for(_execute(), timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise error_type(
                    self.name,
                    f"{operation} timed out after {self._timeout}s",
                ) from e
            except (OperationalError, InterfaceError, OSError) as e:
                logger.error("relational_store_unreachable", store=self.name, operation=operation, error=str(e))
                raise error_type(self.name, f"{operation} failed: {e}") from e
            except SQLAlchemyError as e:
                logger.error("relational_store_error", store=self.name, operation=operation, error=str(e))
                raise error_type(self.name, f"{operation} failed: {e}") from e

    @staticmethod
    async def _get_live(session: AsyncSession, memory_id: str) -> MemoryRow:
        row = await session.get(MemoryRow, memory_id)
        if row is None or row.deleted:
            raise MemoryNotFoundError(memory_id)
        return row

    # -------------------------------------------------------------------------
    # Memory CRUD
    # -------------------------------------------------------------------------

    async def write(self, memory: Memory) -> Memory:
        """Insert a new memory row."""

        async def _work(session: AsyncSession) -> None:
            values = memory.model_dump()
            values["status"] = memory.status.value
            session.add(MemoryRow(**values))

        await self._run("write", _work, write=True)
        logger.debug("memory_written", store=self.name, memory_id=memory.id)
        return memory

    async def read(self, memory_id: str, include_deleted: bool = False) -> Optional[Memory]:
        async def _work(session: AsyncSession) -> Optional[Memory]:
            row = await session.get(MemoryRow, memory_id)
            if row is None or (row.deleted and not include_deleted):
                return None
            return Memory.model_validate(row)

        return await self._run("read", _work)

    async def read_many(self, memory_ids: Sequence[str]) -> list[Memory]:
        """Live memories for ``memory_ids``, in the order given."""
        if not memory_ids:
            return []

        async def _work(session: AsyncSession) -> list[Memory]:
            result = await session.execute(
                select(MemoryRow).where(
                    MemoryRow.id.in_(list(memory_ids)),
                    MemoryRow.deleted.is_(False),
                )
            )
            by_id = {row.id: Memory.model_validate(row) for row in result.scalars()}
            return [by_id[memory_id] for memory_id in memory_ids if memory_id in by_id]

        return await self._run("read_many", _work)

    async def search(self, text: str, limit: int = 20) -> list[tuple[Memory, float]]:
        """Case-insensitive term search over topic, content and category.

        Returns (memory, score) pairs, best first.
        """
        terms = [term for term in text.lower().split() if term]
        if not terms:
            return []

        async def _work(session: AsyncSession) -> list[tuple[Memory, float]]:
            clauses = []
            for term in terms:
                clauses.append(func.lower(MemoryRow.content).contains(term, autoescape=True))
                clauses.append(func.lower(MemoryRow.topic).contains(term, autoescape=True))
                clauses.append(func.lower(MemoryRow.category).contains(term, autoescape=True))
            result = await session.execute(
                select(MemoryRow)
                .where(MemoryRow.deleted.is_(False), or_(*clauses))
                .order_by(MemoryRow.created_at.desc())
                .limit(limit * 5)
            )
            return [(Memory.model_validate(row), 0.0) for row in result.scalars()]

        candidates = await self._run("search", _work)

        scored = []
        for memory, _ in candidates:
            topic = memory.topic.lower()
            content = memory.content.lower()
            category = memory.category.lower()
            score = 0.0
            for term in terms:
                if term in topic:
                    score += TOPIC_MATCH_SCORE
                if term in content or term in category:
                    score += CONTENT_MATCH_SCORE
            scored.append((memory, score))

        # Stable sort keeps newest-first among equal scores
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    async def move(self, memory_id: str, category: str) -> Memory:
        category = category.strip()
        if not category:
            raise ValueError("category must not be blank")

        async def _work(session: AsyncSession) -> Memory:
            row = await self._get_live(session, memory_id)
            row.category = category
            # Vector and graph metadata carry the category
            row.vector_indexed = False
            row.graph_indexed = False
            row.updated_at = utcnow()
            await session.flush()
            return Memory.model_validate(row)

        memory = await self._run("move", _work, write=True)
        logger.info("memory_moved", store=self.name, memory_id=memory_id, category=category)
        return memory

    async def update_content(self, memory_id: str, content: str, topic: Optional[str] = None) -> Memory:
        """Replace a memory's text and send it back through enrichment.

        Earlier EnrichmentResults are kept; the next one supersedes them.
        """
        if not content.strip():
            raise ValueError("content must not be blank")

        async def _work(session: AsyncSession) -> Memory:
            row = await self._get_live(session, memory_id)
            row.content = content
            if topic is not None:
                row.topic = topic.strip()
            row.status = MemoryStatus.PENDING.value
            row.vector_indexed = False
            row.graph_indexed = False
            row.enrichment_attempts = 0
            row.index_attempts = 0
            row.last_error = None
            row.updated_at = utcnow()
            await session.flush()
            return Memory.model_validate(row)

        memory = await self._run("update_content", _work, write=True)
        logger.info("memory_updated", store=self.name, memory_id=memory_id)
        return memory

    async def list_by_category(self, category: str, limit: int = 50) -> list[Memory]:
        """Live memories filed under ``category``, newest first."""

        async def _work(session: AsyncSession) -> list[Memory]:
            result = await session.execute(
                select(MemoryRow)
                .where(MemoryRow.deleted.is_(False), MemoryRow.category == category.strip())
                .order_by(MemoryRow.created_at.desc())
                .limit(limit)
            )
            return [Memory.model_validate(row) for row in result.scalars()]

        return await self._run("list_by_category", _work)

    async def list_recent(self, limit: int = 20) -> list[Memory]:
        async def _work(session: AsyncSession) -> list[Memory]:
            result = await session.execute(
                select(MemoryRow)
                .where(MemoryRow.deleted.is_(False))
                .order_by(MemoryRow.created_at.desc())
                .limit(limit)
            )
            return [Memory.model_validate(row) for row in result.scalars()]

        return await self._run("list_recent", _work)

    async def soft_delete(self, memory_id: str) -> Memory:
        """Tombstone a memory. Vector/graph entries are purged asynchronously."""

        async def _work(session: AsyncSession) -> Memory:
            row = await self._get_live(session, memory_id)
            row.deleted = True
            row.purged = False
            row.updated_at = utcnow()
            await session.flush()
            return Memory.model_validate(row)

        return await self._run("soft_delete", _work, write=True)

    async def mark_purged(self, memory_id: str) -> None:
        async def _work(session: AsyncSession) -> None:
            row = await session.get(MemoryRow, memory_id)
            if row is not None:
                row.purged = True
                row.updated_at = utcnow()

        await self._run("mark_purged", _work, write=True)

    # -------------------------------------------------------------------------
    # Enrichment
    # -------------------------------------------------------------------------

    async def save_enrichment(self, result: EnrichmentResult) -> None:
        """Append a result and mark its memory enriched in one transaction.

        Index flags are cleared so the vector and graph legs are re-driven
        from the new result.
        """

        async def _work(session: AsyncSession) -> None:
            row = await self._get_live(session, result.memory_id)
            session.add(
                EnrichmentRow(
                    id=result.id,
                    memory_id=result.memory_id,
                    label=result.label.value,
                    concepts=list(result.concepts),
                    relations=[relation.model_dump(mode="json") for relation in result.relations],
                    confidence=result.confidence,
                    provider=result.provider,
                    model=result.model,
                    created_at=result.created_at,
                )
            )
            row.status = MemoryStatus.ENRICHED.value
            row.last_error = None
            row.vector_indexed = False
            row.graph_indexed = False
            row.index_attempts = 0
            row.updated_at = utcnow()

        await self._run("save_enrichment", _work, write=True)

    async def latest_enrichment(self, memory_id: str) -> Optional[EnrichmentResult]:
        async def _work(session: AsyncSession) -> Optional[EnrichmentResult]:
            result = await session.execute(
                select(EnrichmentRow)
                .where(EnrichmentRow.memory_id == memory_id)
                .order_by(EnrichmentRow.created_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return EnrichmentResult.model_validate(row) if row is not None else None

        return await self._run("latest_enrichment", _work)

    async def list_enrichments(self, memory_id: str) -> list[EnrichmentResult]:
        """All results for a memory, oldest first."""

        async def _work(session: AsyncSession) -> list[EnrichmentResult]:
            result = await session.execute(
                select(EnrichmentRow)
                .where(EnrichmentRow.memory_id == memory_id)
                .order_by(EnrichmentRow.created_at.asc())
            )
            return [EnrichmentResult.model_validate(row) for row in result.scalars()]

        return await self._run("list_enrichments", _work)

    async def mark_status(
        self,
        memory_id: str,
        status: MemoryStatus,
        error: Optional[str] = None,
        count_attempt: bool = False,
    ) -> None:
        async def _work(session: AsyncSession) -> None:
            row = await session.get(MemoryRow, memory_id)
            if row is None:
                raise MemoryNotFoundError(memory_id)
            row.status = status.value
            row.last_error = error
            if count_attempt:
                row.enrichment_attempts += 1
            row.updated_at = utcnow()

        await self._run("mark_status", _work, write=True)

    async def set_index_flags(
        self,
        memory_id: str,
        vector: Optional[bool] = None,
        graph: Optional[bool] = None,
        count_attempt: bool = False,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of the vector and/or graph leg."""

        async def _work(session: AsyncSession) -> None:
            row = await session.get(MemoryRow, memory_id)
            if row is None:
                raise MemoryNotFoundError(memory_id)
            if vector is not None:
                row.vector_indexed = vector
            if graph is not None:
                row.graph_indexed = graph
            if count_attempt:
                row.index_attempts += 1
            if error is not None:
                row.last_error = error
            row.updated_at = utcnow()

        await self._run("set_index_flags", _work, write=True)

    async def reset_index_attempts(self, memory_id: str) -> None:
        async def _work(session: AsyncSession) -> None:
            row = await self._get_live(session, memory_id)
            row.index_attempts = 0
            row.enrichment_attempts = 0
            row.last_error = None

        await self._run("reset_index_attempts", _work, write=True)

    # -------------------------------------------------------------------------
    # Reconciliation and reporting
    # -------------------------------------------------------------------------

    async def list_reconcilable(
        self,
        limit: int = 200,
        check_vector: bool = True,
        check_graph: bool = True,
        max_index_attempts: Optional[int] = None,
    ) -> list[Memory]:
        """Memories with pending enrichment, incomplete legs, or unpurged tombstones.

        Incomplete legs are only listed while ``index_attempts`` is below
        ``max_index_attempts``; past that they are consistency gaps.
        """

        async def _work(session: AsyncSession) -> list[Memory]:
            incomplete_legs = []
            if check_vector:
                incomplete_legs.append(MemoryRow.vector_indexed.is_(False))
            if check_graph:
                incomplete_legs.append(MemoryRow.graph_indexed.is_(False))

            live_clauses = [MemoryRow.status == MemoryStatus.PENDING.value]
            if incomplete_legs:
                leg_clause = (MemoryRow.status == MemoryStatus.ENRICHED.value) & or_(*incomplete_legs)
                if max_index_attempts is not None:
                    leg_clause = leg_clause & (MemoryRow.index_attempts < max_index_attempts)
                live_clauses.append(leg_clause)

            result = await session.execute(
                select(MemoryRow)
                .where(
                    or_(
                        MemoryRow.deleted.is_(False) & or_(*live_clauses),
                        MemoryRow.deleted.is_(True) & MemoryRow.purged.is_(False),
                    )
                )
                .order_by(MemoryRow.updated_at.asc())
                .limit(limit)
            )
            return [Memory.model_validate(row) for row in result.scalars()]

        return await self._run("list_reconcilable", _work)

    async def count_by_status(self) -> dict[str, int]:
        """Live memory counts keyed by status, plus a ``deleted`` count."""

        async def _work(session: AsyncSession) -> dict[str, int]:
            counts = {status.value: 0 for status in MemoryStatus}
            result = await session.execute(
                select(MemoryRow.status, func.count())
                .where(MemoryRow.deleted.is_(False))
                .group_by(MemoryRow.status)
            )
            for status, count in result.all():
                counts[status] = count
            deleted = await session.execute(
                select(func.count()).select_from(MemoryRow).where(MemoryRow.deleted.is_(True))
            )
            counts["deleted"] = deleted.scalar_one()
            return counts

        return await self._run("count_by_status", _work)

    async def list_categories(self) -> dict[str, int]:
        async def _work(session: AsyncSession) -> dict[str, int]:
            result = await session.execute(
                select(MemoryRow.category, func.count())
                .where(MemoryRow.deleted.is_(False))
                .group_by(MemoryRow.category)
                .order_by(MemoryRow.category)
            )
            return {category: count for category, count in result.all()}

        return await self._run("list_categories", _work)

    async def recent_enriched(self, limit: int, exclude: Sequence[str] = ()) -> list[Memory]:
        """Most recently enriched memories, used as relation context."""
        if limit <= 0:
            return []

        async def _work(session: AsyncSession) -> list[Memory]:
            query = select(MemoryRow).where(
                MemoryRow.deleted.is_(False),
                MemoryRow.status == MemoryStatus.ENRICHED.value,
            )
            if exclude:
                query = query.where(MemoryRow.id.not_in(list(exclude)))
            result = await session.execute(
                query.order_by(MemoryRow.updated_at.desc()).limit(limit)
            )
            return [Memory.model_validate(row) for row in result.scalars()]

        return await self._run("recent_enriched", _work)

    async def list_index_gaps(
        self,
        max_attempts: int,
        check_vector: bool = True,
        check_graph: bool = True,
    ) -> list[Memory]:
        """Enriched memories whose legs are still incomplete after ``max_attempts``."""
        if not (check_vector or check_graph):
            return []

        async def _work(session: AsyncSession) -> list[Memory]:
            incomplete_legs = []
            if check_vector:
                incomplete_legs.append(MemoryRow.vector_indexed.is_(False))
            if check_graph:
                incomplete_legs.append(MemoryRow.graph_indexed.is_(False))
            result = await session.execute(
                select(MemoryRow).where(
                    MemoryRow.deleted.is_(False),
                    MemoryRow.status == MemoryStatus.ENRICHED.value,
                    MemoryRow.index_attempts >= max_attempts,
                    or_(*incomplete_legs),
                )
            )
            return [Memory.model_validate(row) for row in result.scalars()]

        return await self._run("list_index_gaps", _work)

    # -------------------------------------------------------------------------
    # Upgrade support
    # -------------------------------------------------------------------------

    async def export_rows(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Every memory and enrichment row as plain dicts."""

        async def _work(session: AsyncSession) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
            memories = await session.execute(select(MemoryRow))
            enrichments = await session.execute(select(EnrichmentRow))
            return (
                [{column: getattr(row, column) for column in MEMORY_COLUMNS} for row in memories.scalars()],
                [{column: getattr(row, column) for column in ENRICHMENT_COLUMNS} for row in enrichments.scalars()],
            )

        return await self._run("export_rows", _work)

    async def import_rows(
        self,
        memories: list[dict[str, Any]],
        enrichments: list[dict[str, Any]],
    ) -> int:
        """Merge rows by primary key. Safe to repeat."""

        async def _work(session: AsyncSession) -> int:
            for values in memories:
                await session.merge(MemoryRow(**values))
            await session.flush()
            for values in enrichments:
                await session.merge(EnrichmentRow(**values))
            return len(memories) + len(enrichments)

        count = await self._run("import_rows", _work, write=True)
        logger.info("relational_rows_imported", store=self.name, rows=count)
        return count
