"""Unit tests for the MemoryOrchestrator."""

import pytest
from unittest.mock import AsyncMock, patch

from mnemo.core.container import DependencyContainer
from mnemo.core.exceptions import MemoryNotFoundError, StoreWriteError
from mnemo.models.schemas import MemoryStatus, SearchSource, SelectorState
from mnemo.pipeline.jobs import JobKind


def source_status(response, source: SearchSource):
    return next(status for status in response.sources if status.source == source)


@pytest.fixture
async def bare_container(settings):
    """Relational store only: no vector, graph or provider configured."""
    configured = settings.model_copy(update={"llm_provider": "anthropic", "anthropic_api_key": None})
    container = DependencyContainer(configured, start_background=False)
    await container.initialize()
    yield container
    await container.shutdown()


class TestSave:
    """Saving is authoritative once the relational write succeeds."""

    @pytest.mark.asyncio
    async def test_save_is_pending_and_queued(self, container):
        memory = await container.orchestrator.save("  Deploy with blue/green  ", category=" ops ", topic="deploys")

        assert memory.status == MemoryStatus.PENDING
        assert memory.category == "ops"
        assert container.queue.queued_ids([JobKind.ENRICH]) == {memory.id}

    @pytest.mark.asyncio
    async def test_blank_input_is_rejected(self, container):
        with pytest.raises(ValueError):
            await container.orchestrator.save("text", category="   ")
        with pytest.raises(ValueError):
            await container.orchestrator.save("", category="ops")
        assert container.queue.depth == 0

    @pytest.mark.asyncio
    async def test_failed_write_enqueues_nothing(self, container):
        failing = AsyncMock(side_effect=StoreWriteError("sqlite", "database is locked"))

        with patch.object(container.selector.cell.current, "write", failing):
            with pytest.raises(StoreWriteError):
                await container.orchestrator.save("lost", category="ops")

        assert container.queue.depth == 0

    @pytest.mark.asyncio
    async def test_save_succeeds_with_secondary_stores_down(self, container, fake_vector, fake_graph, drain):
        fake_vector.fail = True
        fake_graph.fail = True

        memory = await container.orchestrator.save("Everything is on fire", category="incidents")
        await drain(container)

        detail = await container.orchestrator.get(memory.id)
        assert detail.memory.status == MemoryStatus.ENRICHED
        assert detail.memory.vector_indexed is False
        assert detail.memory.graph_indexed is False

        status = await container.orchestrator.status()
        reachable = {health.name: health.reachable for health in status.stores}
        assert reachable == {"sqlite": True, "fake-vector": False, "fake-graph": False}

    @pytest.mark.asyncio
    async def test_save_without_provider_stays_pending(self, bare_container):
        memory = await bare_container.orchestrator.save("no model configured", category="notes")

        assert bare_container.pipeline is None
        assert "provider" in bare_container.disabled
        detail = await bare_container.orchestrator.get(memory.id)
        assert detail.memory.status == MemoryStatus.PENDING


class TestSearch:
    """Merged search across the three stores."""

    @pytest.mark.asyncio
    async def test_relational_only_reports_other_sources_unavailable(self, bare_container):
        memory = await bare_container.orchestrator.save("Redis eviction policy", category="cache")

        response = await bare_container.orchestrator.search("redis")

        assert [hit.memory.id for hit in response.hits] == [memory.id]
        assert response.hits[0].source == SearchSource.RELATIONAL
        vector = source_status(response, SearchSource.VECTOR)
        assert vector.available is False
        assert vector.error == "not configured"
        assert source_status(response, SearchSource.GRAPH).available is False

    @pytest.mark.asyncio
    async def test_hits_are_merged_and_ranked_by_source(self, container, drain):
        sqlite_note = await container.orchestrator.save("SQLite WAL mode notes", category="db")
        backup_note = await container.orchestrator.save("Backup schedule", category="ops")
        await drain(container)

        response = await container.orchestrator.search("sqlite")

        assert [hit.memory.id for hit in response.hits] == [sqlite_note.id, backup_note.id]
        first, second = response.hits
        assert first.source == SearchSource.RELATIONAL
        assert first.sources == [SearchSource.RELATIONAL, SearchSource.VECTOR, SearchSource.GRAPH]
        # Found only through its extracted concepts
        assert second.source == SearchSource.GRAPH
        assert second.memory.content == "Backup schedule"
        assert [status.count for status in response.sources] == [1, 1, 2]

    @pytest.mark.asyncio
    async def test_failing_source_is_reported_not_raised(self, container, fake_vector, drain):
        memory = await container.orchestrator.save("SQLite WAL mode notes", category="db")
        await drain(container)
        fake_vector.fail = True

        response = await container.orchestrator.search("sqlite")

        assert response.hits[0].memory.id == memory.id
        vector = source_status(response, SearchSource.VECTOR)
        assert vector.available is False
        assert "connection refused" in vector.error

    @pytest.mark.asyncio
    async def test_source_filter_and_deleted_ids(self, container, drain):
        kept = await container.orchestrator.save("sqlite tuning", category="db")
        removed = await container.orchestrator.save("sqlite scratch", category="db")
        await drain(container)
        # Tombstoned, but the vector entry is not purged yet
        await container.orchestrator.delete(removed.id)

        response = await container.orchestrator.search("sqlite", sources=[SearchSource.VECTOR])

        assert [hit.memory.id for hit in response.hits] == [kept.id]
        assert source_status(response, SearchSource.RELATIONAL).requested is False

    @pytest.mark.asyncio
    async def test_limit_and_blank_query(self, container):
        for n in range(3):
            await container.orchestrator.save(f"kafka partition {n}", category="streams")

        response = await container.orchestrator.search("kafka", limit=2)

        assert len(response.hits) == 2
        with pytest.raises(ValueError):
            await container.orchestrator.search("   ")


class TestManage:
    """get, move, delete, requeue and stats."""

    @pytest.mark.asyncio
    async def test_get_returns_enrichment_history(self, container, drain):
        memory = await container.orchestrator.save("Use uv for installs", category="tooling")
        await drain(container)

        detail = await container.orchestrator.get(memory.id)

        assert detail.memory.id == memory.id
        assert len(detail.enrichments) == 1

    @pytest.mark.asyncio
    async def test_unknown_ids_raise_not_found(self, container):
        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.get("missing")
        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.move("missing", "other")
        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.delete("missing")
        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.requeue("missing")

    @pytest.mark.asyncio
    async def test_move_pending_memory_does_not_index(self, container):
        memory = await container.orchestrator.save("still pending", category="inbox")

        moved = await container.orchestrator.move(memory.id, "archive")

        assert moved.category == "archive"
        assert container.queue.queued_ids([JobKind.INDEX]) == set()

    @pytest.mark.asyncio
    async def test_deleted_memory_disappears_from_reads(self, container):
        memory = await container.orchestrator.save("delete me", category="inbox")

        await container.orchestrator.delete(memory.id)

        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.get(memory.id)
        assert (await container.orchestrator.search("delete")).hits == []
        assert container.queue.queued_ids([JobKind.PURGE]) == {memory.id}

    @pytest.mark.asyncio
    async def test_requeue_recovers_failed_memory(self, container, fake_provider, drain):
        fake_provider.errors = [ValueError("rejected")]
        memory = await container.orchestrator.save("try again", category="inbox")
        await drain(container)
        assert (await container.orchestrator.get(memory.id)).memory.status == MemoryStatus.FAILED

        requeued = await container.orchestrator.requeue(memory.id)
        await drain(container)

        assert requeued.status == MemoryStatus.PENDING
        assert (await container.orchestrator.get(memory.id)).memory.status == MemoryStatus.ENRICHED

    @pytest.mark.asyncio
    async def test_stats_and_categories(self, container):
        await container.orchestrator.save("a", category="ops")
        await container.orchestrator.save("b", category="ops")
        gone = await container.orchestrator.save("c", category="dev")
        await container.orchestrator.delete(gone.id)

        stats = await container.orchestrator.stats()

        assert stats.total == 2
        assert stats.deleted == 1
        assert stats.by_status["pending-enrichment"] == 2
        assert stats.by_category == {"ops": 2}
        assert await container.orchestrator.list_categories() == {"ops": 2}


class TestRecallAndRelated:
    """Editing, listing and graph neighborhoods."""

    @pytest.mark.asyncio
    async def test_update_reenriches_memory(self, container, fake_provider, drain):
        memory = await container.orchestrator.save("Nightly pg_dump", category="ops")
        await drain(container)

        updated = await container.orchestrator.update(memory.id, "Hourly WAL archiving", topic="wal")

        assert updated.status == MemoryStatus.PENDING
        assert container.queue.queued_ids([JobKind.ENRICH]) == {memory.id}

        await drain(container)
        detail = await container.orchestrator.get(memory.id)

        assert detail.memory.status == MemoryStatus.ENRICHED
        assert detail.memory.content == "Hourly WAL archiving"
        assert len(detail.enrichments) == 2
        assert fake_provider.classify_calls == 2

    @pytest.mark.asyncio
    async def test_update_unknown_memory_enqueues_nothing(self, container):
        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.update("missing", "text")
        assert container.queue.depth == 0

    @pytest.mark.asyncio
    async def test_recall_category_skips_other_and_deleted(self, container):
        first = await container.orchestrator.save("a", category="ops")
        second = await container.orchestrator.save("b", category="ops")
        await container.orchestrator.save("c", category="dev")
        gone = await container.orchestrator.save("d", category="ops")
        await container.orchestrator.delete(gone.id)

        recalled = await container.orchestrator.recall_category("ops")

        assert {memory.id for memory in recalled} == {first.id, second.id}
        with pytest.raises(ValueError):
            await container.orchestrator.recall_category("  ")

    @pytest.mark.asyncio
    async def test_recent_respects_limit(self, container):
        for text in ("one", "two", "three"):
            await container.orchestrator.save(text, category="inbox")

        recent = await container.orchestrator.recent(limit=2)

        assert len(recent) == 2
        assert recent[0].created_at >= recent[1].created_at

    @pytest.mark.asyncio
    async def test_related_resolves_graph_neighbors(self, container, fake_graph):
        memory = await container.orchestrator.save("Postgres failover runbook", category="ops")
        linked = await container.orchestrator.save("Patroni settings", category="ops")
        gone = await container.orchestrator.save("Old failover notes", category="ops")
        await container.orchestrator.delete(gone.id)
        fake_graph.edges[(memory.id, linked.id, "extends")] = 0.9
        fake_graph.edges[(gone.id, memory.id, "contradicts")] = 0.7
        fake_graph.edges[(memory.id, "never-stored", "relates-to")] = 0.5

        result = await container.orchestrator.related(memory.id)

        assert result.graph_available is True
        assert result.memory.id == memory.id
        assert [related.id for related in result.related] == [linked.id]

    @pytest.mark.asyncio
    async def test_related_with_graph_down_still_returns_memory(self, container, fake_graph):
        memory = await container.orchestrator.save("lonely", category="ops")
        fake_graph.fail = True

        result = await container.orchestrator.related(memory.id)

        assert result.memory.id == memory.id
        assert result.graph_available is False
        assert result.related == []

    @pytest.mark.asyncio
    async def test_related_without_graph_store(self, bare_container):
        memory = await bare_container.orchestrator.save("no graph", category="ops")

        result = await bare_container.orchestrator.related(memory.id)

        assert result.graph_available is False
        assert result.error == "not configured"

    @pytest.mark.asyncio
    async def test_related_rejects_bad_depth_and_unknown_ids(self, container):
        memory = await container.orchestrator.save("x", category="ops")

        with pytest.raises(ValueError):
            await container.orchestrator.related(memory.id, depth=0)
        with pytest.raises(ValueError):
            await container.orchestrator.related(memory.id, depth=6)
        with pytest.raises(MemoryNotFoundError):
            await container.orchestrator.related("missing")


class TestStatus:
    """Operator status snapshot and actions."""

    @pytest.mark.asyncio
    async def test_status_reports_every_backend(self, container):
        await container.orchestrator.save("queued", category="ops")

        status = await container.orchestrator.status()

        assert status.selector_state == SelectorState.EMBEDDED_ACTIVE
        assert [health.name for health in status.stores] == ["sqlite", "fake-vector", "fake-graph"]
        assert status.provider.name == "fake"
        assert status.queue_depth == 1
        assert status.memories["pending-enrichment"] == 1
        assert status.fault is None

    @pytest.mark.asyncio
    async def test_status_never_upgrades(self, container):
        with patch.object(container.selector, "attempt_upgrade", AsyncMock()) as upgrade:
            await container.orchestrator.status()

        upgrade.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_provider_is_reported(self, bare_container):
        status = await bare_container.orchestrator.status()

        assert status.provider.name == "anthropic"
        assert status.provider.configured is False
        assert status.provider.reachable is False
        assert [health.name for health in status.stores] == ["sqlite"]

    @pytest.mark.asyncio
    async def test_upgrade_without_postgres_fails_cleanly(self, container):
        result = await container.orchestrator.attempt_upgrade()

        assert result.success is False
        assert result.step == "probe"
        assert container.selector.state == SelectorState.EMBEDDED_ACTIVE

    @pytest.mark.asyncio
    async def test_reconcile_on_demand(self, container):
        report = await container.orchestrator.reconcile()

        assert report.error is None
        assert container.reconciler.last_report is report
