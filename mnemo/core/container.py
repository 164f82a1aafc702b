"""
Dependency Injection Container for mnemo.

Wires the backend selector, the optional vector/graph stores, the model
provider, the enrichment pipeline and the reconciliation sweep, and owns
their lifecycle.

A backend whose configuration is missing is disabled; the rest of the
system keeps running without it. A configured backend that is unreachable
at startup stays wired: its adapter reconnects on later calls and the
reconciliation sweep re-drives whatever it missed.

Usage:
    # At application startup
    container = DependencyContainer()
    await container.initialize()

    memory = await container.orchestrator.save("...", category="notes")

    # At shutdown
    await container.shutdown()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from mnemo.config.settings import Settings, get_settings
from mnemo.core.exceptions import ConfigurationError, MnemoError

if TYPE_CHECKING:
    from mnemo.llm.base import ModelProvider
    from mnemo.pipeline.jobs import JobQueue
    from mnemo.pipeline.reconciler import ReconciliationSweep
    from mnemo.pipeline.worker import EnrichmentPipeline
    from mnemo.services.orchestrator import MemoryOrchestrator
    from mnemo.storage.base import GraphStore, VectorStore
    from mnemo.storage.selector import BackendSelector, StoreFactory

logger = structlog.get_logger(__name__)


class DependencyContainer:
    """
    Central container for all service dependencies.

    Stores and the provider can be passed in (tests use in-memory doubles);
    anything not passed in is built from settings during ``initialize()``.

    Example:
        container = DependencyContainer(settings, vector=FakeVectorStore())
        await container.initialize()
        status = await container.orchestrator.status()
        await container.shutdown()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        vector: VectorStore | None = None,
        graph: GraphStore | None = None,
        provider: ModelProvider | None = None,
        store_factory: StoreFactory | None = None,
        start_background: bool = True,
    ):
        """
        Initialize the container.

        Args:
            settings: Application settings. Defaults to get_settings().
            vector: Vector store to use instead of building Pinecone.
            graph: Graph store to use instead of building Neo4j.
            provider: Model provider to use instead of the configured one.
            store_factory: Relational store factory for the backend selector.
            start_background: Start the worker task and the periodic sweep.
        """
        self._settings = settings or get_settings()
        self._vector = vector
        self._graph = graph
        self._provider = provider
        self._store_factory = store_factory
        self._start_background = start_background
        self._selector: BackendSelector | None = None
        self._queue: JobQueue | None = None
        self._pipeline: EnrichmentPipeline | None = None
        self._reconciler: ReconciliationSweep | None = None
        self._orchestrator: MemoryOrchestrator | None = None
        self._disabled: dict[str, str] = {}
        self._initialized = False

        logger.info("dependency_container_created")

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def settings(self) -> Settings:
        return self._settings

    def _require(self, value, name: str):
        if value is None:
            raise RuntimeError(f"{name} not available. Call initialize() first.")
        return value

    @property
    def selector(self) -> "BackendSelector":
        return self._require(self._selector, "BackendSelector")

    @property
    def queue(self) -> "JobQueue":
        return self._require(self._queue, "JobQueue")

    @property
    def reconciler(self) -> "ReconciliationSweep":
        return self._require(self._reconciler, "ReconciliationSweep")

    @property
    def orchestrator(self) -> "MemoryOrchestrator":
        return self._require(self._orchestrator, "MemoryOrchestrator")

    @property
    def pipeline(self) -> "EnrichmentPipeline | None":
        """None when no model provider is configured."""
        return self._pipeline

    @property
    def vector(self) -> "VectorStore | None":
        return self._vector

    @property
    def graph(self) -> "GraphStore | None":
        return self._graph

    @property
    def provider(self) -> "ModelProvider | None":
        return self._provider

    @property
    def disabled(self) -> dict[str, str]:
        """Backends left out because of configuration errors, with the reason."""
        return dict(self._disabled)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Builders
    # =========================================================================

    def _build_vector(self) -> "VectorStore":
        from mnemo.knowledge.embeddings import EmbeddingsService
        from mnemo.knowledge.pinecone_client import PineconeVectorStore

        if not self._settings.pinecone_configured:
            raise ConfigurationError("PINECONE_API_KEY is not set", config_key="pinecone_api_key")
        if not self._settings.openai_api_key or not self._settings.openai_api_key.get_secret_value():
            raise ConfigurationError(
                "OPENAI_API_KEY is required for vector embeddings", config_key="openai_api_key"
            )
        embeddings = EmbeddingsService(
            api_key=self._settings.openai_api_key.get_secret_value(),
            model=self._settings.embedding_model,
            dimension=self._settings.embedding_dimension,
            timeout=self._settings.provider_timeout_seconds,
        )
        return PineconeVectorStore(
            api_key=self._settings.pinecone_api_key.get_secret_value(),
            index_name=self._settings.pinecone_index_name,
            embeddings=embeddings,
            namespace=self._settings.pinecone_namespace,
            timeout=self._settings.store_timeout_seconds,
        )

    def _build_graph(self) -> "GraphStore":
        from mnemo.knowledge.neo4j_client import Neo4jGraphStore

        if not self._settings.neo4j_configured:
            raise ConfigurationError(
                "NEO4J_URI, NEO4J_USER and NEO4J_PASSWORD must all be set", config_key="neo4j_uri"
            )
        return Neo4jGraphStore(
            uri=self._settings.neo4j_uri,
            user=self._settings.neo4j_user,
            password=self._settings.neo4j_password.get_secret_value(),
            database=self._settings.neo4j_database,
            timeout=self._settings.store_timeout_seconds,
        )

    async def _open_optional(self, name: str, current, builder):
        """Build (unless injected) and connect an optional backend."""
        if current is None:
            try:
                current = builder()
            except ConfigurationError as e:
                self._disabled[name] = e.message
                logger.warning("backend_disabled", backend=name, reason=e.message)
                return None
        connect = getattr(current, "connect", None)
        if connect is not None:
            try:
                await connect()
            except MnemoError as e:
                logger.warning("backend_degraded_at_startup", backend=name, error=e.message)
        return current

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Start every component.

        Only the relational store is required; if neither the networked nor
        the embedded store can be opened this raises.

        Raises:
            BackendUnreachableError: If the embedded store cannot be opened.
        """
        if self._initialized:
            logger.warning("container_already_initialized")
            return

        from mnemo.llm.factory import create_provider
        from mnemo.pipeline.jobs import JobQueue
        from mnemo.pipeline.reconciler import ReconciliationSweep
        from mnemo.pipeline.worker import EnrichmentPipeline
        from mnemo.services.orchestrator import MemoryOrchestrator
        from mnemo.storage.selector import BackendSelector

        logger.info("container_initializing")

        self._selector = BackendSelector(self._settings, store_factory=self._store_factory)
        cell = await self._selector.start()

        self._vector = await self._open_optional("vector", self._vector, self._build_vector)
        self._graph = await self._open_optional("graph", self._graph, self._build_graph)

        if self._provider is None:
            try:
                self._provider = create_provider(self._settings)
            except ConfigurationError as e:
                self._disabled["provider"] = e.message
                logger.warning("backend_disabled", backend="provider", reason=e.message)

        self._queue = JobQueue(
            max_attempts=self._settings.pipeline_max_attempts,
            backoff_base=self._settings.pipeline_backoff_base_seconds,
            backoff_max=self._settings.pipeline_backoff_max_seconds,
        )
        self._reconciler = ReconciliationSweep(
            cell,
            self._queue,
            self._settings,
            vector_enabled=self._vector is not None,
            graph_enabled=self._graph is not None,
        )
        if self._provider is not None:
            self._pipeline = EnrichmentPipeline(
                cell,
                self._provider,
                self._queue,
                self._settings,
                vector=self._vector,
                graph=self._graph,
            )
            self._selector.add_confirmer(self._pipeline.confirm_store)

        self._orchestrator = MemoryOrchestrator(
            self._selector,
            self._queue,
            self._reconciler,
            self._provider,
            self._settings,
            vector=self._vector,
            graph=self._graph,
        )

        if self._start_background:
            if self._pipeline is not None:
                await self._pipeline.start()
            await self._reconciler.start()

        self._initialized = True
        logger.info(
            "container_initialized",
            relational=self._selector.active_kind.value,
            vector=self._vector is not None,
            graph=self._graph is not None,
            provider=self._provider.name if self._provider is not None else None,
        )

    async def shutdown(self) -> None:
        """
        Shutdown all services gracefully.

        The worker finishes its current batch; queued jobs are dropped and
        rebuilt by the startup sweep next time.
        """
        logger.info("container_shutting_down")

        if self._reconciler is not None:
            self._reconciler.stop()
        if self._pipeline is not None:
            await self._pipeline.stop()
        elif self._queue is not None:
            await self._queue.close()

        for name, component in (
            ("vector", self._vector),
            ("graph", self._graph),
            ("provider", self._provider),
        ):
            if component is None:
                continue
            try:
                await component.close()
                logger.info("component_closed", component=name)
            except Exception as e:
                logger.error("component_close_error", component=name, error=str(e))

        if self._selector is not None:
            await self._selector.close()

        self._initialized = False
        logger.info("container_shutdown_complete")
