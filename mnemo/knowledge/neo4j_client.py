"""
Neo4j Graph Store.

Relationship network over memories: one (:Memory {id}) node per memory,
(:Concept {key}) nodes shared across memories, MENTIONS edges from a memory
to its concepts and RELATES edges between memories. Every write is a MERGE
keyed by memory id, so repeated enrichment never duplicates nodes or edges.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncManagedTransaction
from neo4j.exceptions import AuthError, Neo4jError, ServiceUnavailable

from mnemo.core.circuit_breaker import get_circuit_breaker
from mnemo.core.exceptions import BackendUnreachableError
from mnemo.models.schemas import BackendHealth, BackendKind
from mnemo.monitoring.metrics import track_store_operation

logger = structlog.get_logger(__name__)

# Circuit breaker for Neo4j operations
_neo4j_breaker = get_circuit_breaker("neo4j", failure_threshold=5, recovery_timeout=60)

MAX_NEIGHBORHOOD_DEPTH = 5


# =============================================================================
# Schema
# =============================================================================

SCHEMA_STATEMENTS = """
// Memory nodes are keyed by the relational memory id
CREATE CONSTRAINT memory_id IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE;
CREATE INDEX memory_category IF NOT EXISTS FOR (m:Memory) ON (m.category);

// Concepts are shared, keyed by their lowercased name
CREATE CONSTRAINT concept_key IF NOT EXISTS FOR (c:Concept) REQUIRE c.key IS UNIQUE;
"""


# =============================================================================
# Cypher
# =============================================================================

UPSERT_NODE = """
MERGE (m:Memory {id: $id})
SET m += $attrs
"""

UPSERT_CONCEPTS = """
MERGE (m:Memory {id: $id})
WITH m
OPTIONAL MATCH (m)-[old:MENTIONS]->(:Concept)
DELETE old
WITH DISTINCT m
UNWIND $concepts AS name
MERGE (c:Concept {key: toLower(name)})
ON CREATE SET c.name = name
MERGE (m)-[:MENTIONS]->(c)
"""

UPSERT_EDGE = """
MERGE (a:Memory {id: $from_id})
MERGE (b:Memory {id: $to_id})
MERGE (a)-[r:RELATES {kind: $kind}]->(b)
SET r.confidence = $confidence, r.updated_at = datetime()
"""

NEIGHBORHOOD = """
MATCH (m:Memory {{id: $id}})
OPTIONAL MATCH (m)-[:RELATES*1..{depth}]-(r:Memory)
OPTIONAL MATCH (m)-[:MENTIONS]->(:Concept)<-[:MENTIONS]-(s:Memory)
WITH collect(DISTINCT r.id) + collect(DISTINCT s.id) AS ids
UNWIND ids AS neighbor
WITH DISTINCT neighbor
WHERE neighbor IS NOT NULL AND neighbor <> $id
RETURN neighbor AS id
LIMIT $limit
"""

SEARCH_CONCEPTS = """
UNWIND $terms AS term
MATCH (c:Concept) WHERE c.key CONTAINS term
MATCH (c)<-[:MENTIONS]-(m:Memory)
OPTIONAL MATCH (m)-[:RELATES]-(n:Memory)
WITH collect(DISTINCT m.id) + collect(DISTINCT n.id) AS ids
UNWIND ids AS id
WITH DISTINCT id
WHERE id IS NOT NULL
RETURN id
LIMIT $limit
"""

DELETE_NODE = """
MATCH (m:Memory {id: $id})
DETACH DELETE m
"""


class Neo4jGraphStore:
    """
    Async Neo4j graph store.

    Usage:
        graph = Neo4jGraphStore(uri, user, password)
        await graph.connect()
        await graph.upsert_node(memory.id, memory.index_metadata())
        neighbors = await graph.neighborhood(memory.id, depth=2)
    """

    name = "neo4j"

    def __init__(
        self,
        uri: str,
        user: str,
        password: str,
        database: str = "neo4j",
        timeout: float = 10.0,
    ) -> None:
        self._uri = uri
        self._user = user
        self._password = password
        self._database = database
        self._timeout = timeout
        self._driver: AsyncDriver | None = None
        self._schema_ready = False

    async def connect(self) -> None:
        """Create the driver, verify connectivity and initialize the schema.

        Raises:
            BackendUnreachableError: If Neo4j cannot be reached. The driver is
                kept so later calls can succeed once the server is back.
        """
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(
                self._uri,
                auth=(self._user, self._password),
            )
        try:
            await asyncio.wait_for(self._driver.verify_connectivity(), timeout=self._timeout)
            logger.info("neo4j_connected", uri=self._uri)
            await self._initialize_schema()
        except AuthError as e:
            logger.error("neo4j_auth_failed", error=str(e), uri=self._uri)
            raise BackendUnreachableError(self.name, f"Neo4j authentication failed: {e}", {"uri": self._uri})
        except (ServiceUnavailable, asyncio.TimeoutError, OSError) as e:
            logger.error("neo4j_unavailable", error=str(e), uri=self._uri)
            raise BackendUnreachableError(self.name, f"Neo4j service unavailable: {e}", {"uri": self._uri})

    async def _initialize_schema(self) -> None:
        """Create constraints and indexes. Safe to call multiple times."""
        statements = [
            stmt.strip()
            for stmt in SCHEMA_STATEMENTS.strip().split(";")
            if stmt.strip()
        ]
        for statement in statements:
            # Drop leading comment lines
            statement = "\n".join(
                line for line in statement.splitlines() if not line.strip().startswith("//")
            ).strip()
            if not statement:
                continue
            try:
                async with self.driver.session(database=self._database) as session:
                    await session.run(statement)
            except Neo4jError as e:
                logger.debug("neo4j_schema_item_skipped", statement=statement[:50], reason=str(e))
        self._schema_ready = True
        logger.info("neo4j_schema_initialized", statements=len(statements))

    async def close(self) -> None:
        """Close the Neo4j driver connection."""
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("neo4j_disconnected")

    @property
    def driver(self) -> AsyncDriver:
        if self._driver is None:
            raise RuntimeError("Neo4j store not connected. Call connect() first.")
        return self._driver

    async def _run(
        self,
        operation: str,
        query: str,
        parameters: dict[str, Any],
        write: bool = False,
    ) -> list[dict[str, Any]]:
        """Execute a Cypher statement behind the circuit breaker and a timeout."""

        async def _tx(tx: AsyncManagedTransaction) -> list[dict[str, Any]]:
            result = await tx.run(query, parameters)
            return await result.data()

        async def _execute() -> list[dict[str, Any]]:
            async with self.driver.session(database=self._database) as session:
                if write:
                    return await session.execute_write(_tx)
                return await session.execute_read(_tx)

        with track_store_operation(self.name, operation):
            async with _neo4j_breaker.guard():
                if not self._schema_ready:
                    try:
                        await self._initialize_schema()
                    except (ServiceUnavailable, OSError) as e:
                        logger.debug("neo4j_schema_deferred", error=str(e))
                try:
                    records = await asyncio.wait_for(_execute(), timeout=self._timeout)
                except (ServiceUnavailable, AuthError, Neo4jError, asyncio.TimeoutError, OSError) as e:
                    logger.error(
                        "neo4j_query_failed",
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise BackendUnreachableError(
                        self.name,
                        f"{operation} failed: {e}",
                        {"query": query.strip()[:100]},
                    ) from e

        logger.debug("neo4j_query_executed", operation=operation, record_count=len(records))
        return records

    # -------------------------------------------------------------------------
    # Graph operations
    # -------------------------------------------------------------------------

    async def upsert_node(self, memory_id: str, attrs: dict[str, Any]) -> None:
        properties = {key: value for key, value in attrs.items() if value is not None and key != "id"}
        await self._run("upsert_node", UPSERT_NODE, {"id": memory_id, "attrs": properties}, write=True)

    async def upsert_concepts(self, memory_id: str, concepts: Sequence[str]) -> None:
        """Replace the memory's MENTIONS edges with ``concepts``."""
        await self._run(
            "upsert_concepts",
            UPSERT_CONCEPTS,
            {"id": memory_id, "concepts": list(concepts)},
            write=True,
        )

    async def upsert_edge(
        self,
        from_id: str,
        to_id: str,
        relation_kind: str,
        confidence: float,
    ) -> None:
        await self._run(
            "upsert_edge",
            UPSERT_EDGE,
            {"from_id": from_id, "to_id": to_id, "kind": relation_kind, "confidence": confidence},
            write=True,
        )

    async def neighborhood(self, memory_id: str, depth: int = 1, limit: int = 50) -> list[str]:
        """Memory ids reachable over RELATES edges or a shared concept."""
        if not 1 <= depth <= MAX_NEIGHBORHOOD_DEPTH:
            raise ValueError(f"depth must be between 1 and {MAX_NEIGHBORHOOD_DEPTH}")
        records = await self._run(
            "neighborhood",
            NEIGHBORHOOD.format(depth=depth),
            {"id": memory_id, "limit": limit},
        )
        return [record["id"] for record in records]

    async def search_concepts(self, text: str, limit: int = 20) -> list[str]:
        """Memory ids mentioning a concept that matches a query term, plus their relations."""
        terms = [term for term in text.lower().split() if term]
        if not terms:
            return []
        records = await self._run("search_concepts", SEARCH_CONCEPTS, {"terms": terms, "limit": limit})
        return [record["id"] for record in records]

    async def delete_node(self, memory_id: str) -> None:
        await self._run("delete_node", DELETE_NODE, {"id": memory_id}, write=True)

    async def health_check(self) -> BackendHealth:
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self.driver.verify_connectivity(), timeout=self._timeout)
        except Exception as e:
            return BackendHealth(
                name=self.name,
                kind=BackendKind.NETWORKED,
                reachable=False,
                error=f"{type(e).__name__}: {e}",
            )
        return BackendHealth(
            name=self.name,
            kind=BackendKind.NETWORKED,
            reachable=True,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
