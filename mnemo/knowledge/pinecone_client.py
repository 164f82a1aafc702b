"""
Pinecone Vector Store.

Semantic similarity index over memories. Vector ids are memory ids, so an
upsert for an already indexed memory replaces its entry instead of adding a
second one.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Union

import structlog
from pinecone import Pinecone, ServerlessSpec

from mnemo.core.circuit_breaker import get_circuit_breaker
from mnemo.core.exceptions import BackendUnreachableError
from mnemo.knowledge.embeddings import EmbeddingsService
from mnemo.models.schemas import BackendHealth, BackendKind
from mnemo.monitoring.metrics import track_store_operation

logger = structlog.get_logger(__name__)

# Circuit breaker for Pinecone operations
_pinecone_breaker = get_circuit_breaker("pinecone", failure_threshold=5, recovery_timeout=60)


class PineconeVectorStore:
    """
    Pinecone vector store client.

    Usage:
        store = PineconeVectorStore(api_key, "mnemo-memories", embeddings)
        await store.connect()
        await store.upsert(memory.id, memory.content, memory.index_metadata())
        hits = await store.query_similar("null pointer", k=5)
    """

    name = "pinecone"

    # Index configuration
    METRIC = "cosine"
    CLOUD = "aws"
    REGION = "us-east-1"

    def __init__(
        self,
        api_key: str,
        index_name: str,
        embeddings: EmbeddingsService,
        namespace: str = "",
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._index_name = index_name
        self._embeddings = embeddings
        self._namespace = namespace
        self._timeout = timeout
        self._client: Pinecone | None = None
        self._index: Any = None

    async def connect(self) -> None:
        """Initialize the client and make sure the index exists."""
        if self._client is None:
            self._client = Pinecone(api_key=self._api_key)
            logger.info("pinecone_client_initialized")
        try:
            await self._in_executor(self._ensure_index)
        except Exception as e:
            raise BackendUnreachableError(self.name, f"Failed to open index: {e}") from e

    def _ensure_index(self) -> None:
        """Create the index if it doesn't exist and connect to it."""
        if self._index is not None:
            return
        existing = [idx.name for idx in self._client.list_indexes()]
        if self._index_name not in existing:
            logger.info(
                "pinecone_creating_index",
                index_name=self._index_name,
                dimension=self._embeddings.dimension,
                metric=self.METRIC,
            )
            self._client.create_index(
                name=self._index_name,
                dimension=self._embeddings.dimension,
                metric=self.METRIC,
                spec=ServerlessSpec(cloud=self.CLOUD, region=self.REGION),
            )
        self._index = self._client.Index(self._index_name)
        logger.info("pinecone_index_connected", index_name=self._index_name)

    async def _in_executor(self, func: Any) -> Any:
        # Pinecone client is sync
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=self._timeout)

    async def _call(self, operation: str, func: Any) -> Any:
        """Run a sync index call behind the circuit breaker and a timeout."""
        with track_store_operation(self.name, operation):
            async with _pinecone_breaker.guard():
                try:
                    if self._index is None:
                        await self._in_executor(self._ensure_index)
                    return await self._in_executor(func)
                except Exception as e:
                    logger.error(
                        "pinecone_call_failed",
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise BackendUnreachableError(self.name, f"{operation} failed: {e}") from e

    async def upsert(
        self,
        memory_id: str,
        text_or_embedding: Union[str, list[float]],
        metadata: dict[str, Any],
    ) -> None:
        """Insert or replace the vector for ``memory_id``.

        Text is embedded first; a list of floats is used as-is.
        """
        if isinstance(text_or_embedding, str):
            values = await self._embeddings.embed_text(text_or_embedding)
        else:
            values = list(text_or_embedding)
        if len(values) != self._embeddings.dimension:
            raise ValueError(
                f"Embedding dimension {len(values)} does not match index dimension {self._embeddings.dimension}"
            )

        vector = {"id": memory_id, "values": values, "metadata": metadata}
        await self._call(
            "upsert",
            lambda: self._index.upsert(vectors=[vector], namespace=self._namespace),
        )
        logger.debug("pinecone_vector_upserted", memory_id=memory_id)

    async def query_similar(self, text: str, k: int = 10) -> list[tuple[str, float]]:
        """Return (memory_id, score) pairs, most similar first."""
        vector = await self._embeddings.embed_text(text)
        result = await self._call(
            "query_similar",
            lambda: self._index.query(
                vector=vector,
                top_k=k,
                namespace=self._namespace,
                include_metadata=False,
            ),
        )
        matches = [(match.id, float(match.score)) for match in result.matches]
        logger.debug("pinecone_query_completed", top_k=k, matches=len(matches))
        return matches

    async def delete(self, memory_id: str) -> None:
        await self._call(
            "delete",
            lambda: self._index.delete(ids=[memory_id], namespace=self._namespace),
        )
        logger.info("pinecone_vector_deleted", memory_id=memory_id)

    async def health_check(self) -> BackendHealth:
        start = time.perf_counter()
        try:
            if self._client is None:
                self._client = Pinecone(api_key=self._api_key)
            await self._in_executor(lambda: self._client.describe_index(self._index_name))
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

    async def close(self) -> None:
        await self._embeddings.close()
        self._index = None
        self._client = None
