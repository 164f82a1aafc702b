"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Settings pointing at a temporary SQLite file, fast backoff
- fake_vector / fake_graph: in-memory vector and graph stores
- fake_provider: scripted model provider running the real normalization
- container: initialized DependencyContainer without background tasks
- drain: run queued jobs through the pipeline until the queue is empty
"""

import asyncio
import json
from typing import Any, Optional, Sequence

import pytest

from mnemo.config.settings import Settings
from mnemo.core.circuit_breaker import reset_all_circuit_breakers
from mnemo.core.container import DependencyContainer
from mnemo.core.exceptions import BackendUnreachableError
from mnemo.llm.base import ModelProvider
from mnemo.models.schemas import BackendHealth, BackendKind


# =============================================================================
# Store and provider doubles
# =============================================================================


class FakeVectorStore:
    """Dict-backed vector store. Set ``fail`` to simulate an outage."""

    name = "fake-vector"

    def __init__(self) -> None:
        self.vectors: dict[str, dict[str, Any]] = {}
        self.upserts = 0
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise BackendUnreachableError(self.name, "connection refused")

    async def upsert(self, memory_id: str, text_or_embedding, metadata: dict[str, Any]) -> None:
        self._check()
        self.upserts += 1
        self.vectors[memory_id] = {"text": text_or_embedding, "metadata": metadata}

    async def query_similar(self, text: str, k: int = 10) -> list[tuple[str, float]]:
        self._check()
        terms = text.lower().split()
        hits = []
        for memory_id, entry in self.vectors.items():
            body = str(entry["text"]).lower()
            matched = sum(1 for term in terms if term in body)
            if matched:
                hits.append((memory_id, matched / len(terms)))
        hits.sort(key=lambda pair: pair[1], reverse=True)
        return hits[:k]

    async def delete(self, memory_id: str) -> None:
        self._check()
        self.vectors.pop(memory_id, None)

    async def health_check(self) -> BackendHealth:
        return BackendHealth(
            name=self.name,
            kind=BackendKind.NETWORKED,
            reachable=not self.fail,
            error="connection refused" if self.fail else None,
        )

    async def close(self) -> None:
        pass


class FakeGraphStore:
    """In-memory graph store. Set ``fail`` to simulate an outage."""

    name = "fake-graph"

    def __init__(self) -> None:
        self.nodes: dict[str, dict[str, Any]] = {}
        self.edges: dict[tuple[str, str, str], float] = {}
        self.concepts: dict[str, set[str]] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise BackendUnreachableError(self.name, "service unavailable")

    async def upsert_node(self, memory_id: str, attrs: dict[str, Any]) -> None:
        self._check()
        self.nodes[memory_id] = dict(attrs)

    async def upsert_edge(self, from_id: str, to_id: str, relation_kind: str, confidence: float) -> None:
        self._check()
        self.edges[(from_id, to_id, relation_kind)] = confidence

    async def upsert_concepts(self, memory_id: str, concepts: Sequence[str]) -> None:
        self._check()
        self.concepts[memory_id] = {concept.lower() for concept in concepts}

    async def neighborhood(self, memory_id: str, depth: int = 1) -> list[str]:
        self._check()
        return sorted(
            {to_id for from_id, to_id, _ in self.edges if from_id == memory_id}
            | {from_id for from_id, to_id, _ in self.edges if to_id == memory_id}
        )

    async def search_concepts(self, text: str, limit: int = 20) -> list[str]:
        self._check()
        terms = set(text.lower().split())
        return [memory_id for memory_id, concepts in self.concepts.items() if terms & concepts][:limit]

    async def delete_node(self, memory_id: str) -> None:
        self._check()
        self.nodes.pop(memory_id, None)
        self.concepts.pop(memory_id, None)
        self.edges = {key: value for key, value in self.edges.items() if memory_id not in key[:2]}

    async def health_check(self) -> BackendHealth:
        return BackendHealth(
            name=self.name,
            kind=BackendKind.NETWORKED,
            reachable=not self.fail,
            error="service unavailable" if self.fail else None,
        )

    async def close(self) -> None:
        pass


class FakeProvider(ModelProvider):
    """
    Scripted provider. Responses go through the real parsing and
    normalization in ModelProvider.

    - ``label`` / ``concepts`` / ``confidence``: classification answer
    - ``relations``: list of {"source", "target", "kind", "confidence"}
    - ``errors``: exceptions raised by the next calls, one per call
    - ``raw``: if set, returned verbatim instead of JSON
    """

    name = "fake"

    def __init__(self, max_input_chars: int = 4000) -> None:
        super().__init__("fake-1", max_input_chars)
        self.label = "technical"
        self.concepts = ["sqlite", "upgrade"]
        self.confidence = 0.9
        self.relations: list[dict[str, Any]] = []
        self.errors: list[BaseException] = []
        self.raw: Optional[str] = None
        self.prompts: list[str] = []

    async def _complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.errors:
            raise self.errors.pop(0)
        if self.raw is not None:
            return self.raw
        if prompt.startswith("Classify"):
            return json.dumps({"label": self.label, "concepts": self.concepts, "confidence": self.confidence})
        return json.dumps({"relations": self.relations})

    @property
    def classify_calls(self) -> int:
        return sum(1 for prompt in self.prompts if prompt.startswith("Classify"))

    async def health_check(self) -> BackendHealth:
        return BackendHealth(name=self.name, kind=BackendKind.EMBEDDED, reachable=True)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_breakers():
    """Circuit breakers are process-wide; start every test closed."""
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        sqlite_path=str(tmp_path / "mnemo.db"),
        postgres_host=None,
        neo4j_uri=None,
        pinecone_api_key=None,
        pipeline_batch_size=8,
        pipeline_batch_window_seconds=0.0,
        pipeline_max_attempts=3,
        pipeline_backoff_base_seconds=0.01,
        pipeline_backoff_max_seconds=0.05,
        provider_timeout_seconds=5.0,
        store_timeout_seconds=5.0,
        index_max_attempts=2,
        relation_context_size=5,
    )


@pytest.fixture
def fake_vector() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def fake_graph() -> FakeGraphStore:
    return FakeGraphStore()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def container(settings, fake_vector, fake_graph, fake_provider):
    """Fully wired container; jobs only run when a test drains the queue."""
    container = DependencyContainer(
        settings,
        vector=fake_vector,
        graph=fake_graph,
        provider=fake_provider,
        start_background=False,
    )
    await container.initialize()
    yield container
    await container.shutdown()


async def run_pending(container: DependencyContainer, max_batches: int = 50) -> int:
    """Process queued jobs (including retries after backoff) until none are left."""
    batches = 0
    while container.queue.depth and batches < max_batches:
        batch = await asyncio.wait_for(
            container.queue.next_batch(container.settings.pipeline_batch_size, 0.0),
            timeout=5.0,
        )
        await container.pipeline.process_batch(batch)
        batches += 1
    return batches


@pytest.fixture
def drain():
    return run_pending
