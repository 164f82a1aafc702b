"""End-to-end tests of the HTTP surface."""

import httpx
import pytest
from pydantic import SecretStr
from unittest.mock import AsyncMock, patch

from mnemo.core.exceptions import BackendUnreachableError

pytestmark = pytest.mark.integration


class TestHealth:
    """Test health endpoints."""

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readiness_with_sqlite(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["backend"] == "embedded"

    @pytest.mark.asyncio
    async def test_health_is_degraded_when_a_secondary_store_is_down(self, client, fake_graph):
        healthy = await client.get("/health")
        fake_graph.fail = True
        degraded = await client.get("/health")

        assert healthy.json()["status"] == "healthy"
        body = degraded.json()
        assert body["status"] == "degraded"
        assert body["selector_state"] == "embedded-active"
        assert body["services"]["fake-graph"]["reachable"] is False

    @pytest.mark.asyncio
    async def test_readiness_without_container(self, app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://mnemo.test") as bare:
            response = await bare.get("/health/ready")

        assert response.status_code == 503


class TestMemories:
    """Test the memory endpoints."""

    @pytest.mark.asyncio
    async def test_save_then_read_after_enrichment(self, client, container, drain):
        created = await client.post(
            "/api/v1/memories",
            json={"content": "Nightly pg_dump at 02:00", "category": "ops", "topic": "backups"},
        )

        assert created.status_code == 201
        memory = created.json()
        assert memory["status"] == "pending-enrichment"

        await drain(container)
        detail = await client.get(f"/api/v1/memories/{memory['id']}")

        assert detail.status_code == 200
        body = detail.json()
        assert body["memory"]["status"] == "enriched"
        assert body["enrichments"][0]["label"] == "technical"

    @pytest.mark.asyncio
    async def test_search_lists_every_source(self, client):
        await client.post("/api/v1/memories", json={"content": "Redis eviction policy", "category": "cache"})

        response = await client.get("/api/v1/memories/search", params={"q": "redis"})

        assert response.status_code == 200
        body = response.json()
        assert len(body["hits"]) == 1
        assert [source["source"] for source in body["sources"]] == ["relational", "vector", "graph"]

    @pytest.mark.asyncio
    async def test_search_with_source_filter(self, client):
        response = await client.get(
            "/api/v1/memories/search", params=[("q", "redis"), ("sources", "vector")]
        )

        assert response.status_code == 200
        requested = {source["source"]: source["requested"] for source in response.json()["sources"]}
        assert requested == {"relational": False, "vector": True, "graph": False}

    @pytest.mark.asyncio
    async def test_move_delete_and_categories(self, client):
        memory = (
            await client.post("/api/v1/memories", json={"content": "Rotate keys", "category": "inbox"})
        ).json()

        moved = await client.post(f"/api/v1/memories/{memory['id']}/move", json={"category": "security"})
        categories = await client.get("/api/v1/memories/categories")
        deleted = await client.delete(f"/api/v1/memories/{memory['id']}")
        missing = await client.get(f"/api/v1/memories/{memory['id']}")

        assert moved.json()["category"] == "security"
        assert categories.json() == {"categories": {"security": 1}, "total": 1}
        assert deleted.json()["deleted"] is True
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_requeue_returns_accepted(self, client):
        memory = (await client.post("/api/v1/memories", json={"content": "again", "category": "a"})).json()

        response = await client.post(f"/api/v1/memories/{memory['id']}/requeue")

        assert response.status_code == 202

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.post("/api/v1/memories", json={"content": "one", "category": "a"})

        response = await client.get("/api/v1/memories/stats")

        assert response.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_update_sends_memory_back_to_enrichment(self, client, container, drain):
        memory = (await client.post("/api/v1/memories", json={"content": "v1", "category": "notes"})).json()
        await drain(container)

        response = await client.put(f"/api/v1/memories/{memory['id']}", json={"content": "v2"})

        assert response.status_code == 200
        assert response.json()["content"] == "v2"
        assert response.json()["status"] == "pending-enrichment"
        missing = await client.put("/api/v1/memories/unknown", json={"content": "v2"})
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_recent_and_category_listing(self, client):
        await client.post("/api/v1/memories", json={"content": "one", "category": "ops"})
        await client.post("/api/v1/memories", json={"content": "two", "category": "dev"})

        recent = await client.get("/api/v1/memories/recent", params={"limit": 1})
        in_ops = await client.get("/api/v1/memories/categories/ops")

        assert recent.status_code == 200
        assert len(recent.json()) == 1
        assert [memory["content"] for memory in in_ops.json()] == ["one"]

    @pytest.mark.asyncio
    async def test_related_route(self, client, fake_graph):
        first = (await client.post("/api/v1/memories", json={"content": "a", "category": "ops"})).json()
        second = (await client.post("/api/v1/memories", json={"content": "b", "category": "ops"})).json()
        fake_graph.edges[(first["id"], second["id"], "extends")] = 0.8

        response = await client.get(f"/api/v1/memories/{first['id']}/related", params={"depth": 2})
        too_deep = await client.get(f"/api/v1/memories/{first['id']}/related", params={"depth": 9})

        assert response.status_code == 200
        body = response.json()
        assert body["depth"] == 2
        assert body["graph_available"] is True
        assert [memory["id"] for memory in body["related"]] == [second["id"]]
        assert too_deep.status_code == 422

    @pytest.mark.asyncio
    async def test_request_validation_envelope(self, client):
        response = await client.post("/api/v1/memories", json={"content": "", "category": "ops"})

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["errors"][0]["field"] == "body.content"

    @pytest.mark.asyncio
    async def test_blank_category_is_invalid_input(self, client):
        response = await client.post("/api/v1/memories", json={"content": "text", "category": "   "})

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_relational_outage_is_503(self, client, container):
        failing = AsyncMock(side_effect=BackendUnreachableError("sqlite", "unable to open database file"))

        with patch.object(container.selector.cell.current, "write", failing):
            response = await client.post("/api/v1/memories", json={"content": "lost", "category": "ops"})

        assert response.status_code == 503
        assert response.json()["error"] == "backend_unavailable"
        assert container.queue.depth == 0


class TestStatus:
    """Test the operator endpoints."""

    @pytest.mark.asyncio
    async def test_status_snapshot(self, client):
        response = await client.get("/api/v1/status")

        assert response.status_code == 200
        body = response.json()
        assert body["selector_state"] == "embedded-active"
        assert body["active_backend"] == "embedded"
        assert [store["name"] for store in body["stores"]] == ["sqlite", "fake-vector", "fake-graph"]

    @pytest.mark.asyncio
    async def test_upgrade_failure_is_reported_in_body(self, client):
        response = await client.post("/api/v1/status/upgrade")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["step"] == "probe"

    @pytest.mark.asyncio
    async def test_reconcile_and_jobs(self, client, container, drain):
        await client.post("/api/v1/memories", json={"content": "job trail", "category": "a"})
        await drain(container)

        report = await client.post("/api/v1/status/reconcile")
        jobs = await client.get("/api/v1/status/jobs", params={"state": "succeeded"})

        assert report.json()["error"] is None
        assert jobs.json()["total"] == 1
        assert jobs.json()["jobs"][0]["kind"] == "enrich"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client):
        response = await client.get("/metrics/")

        assert response.status_code == 200
        assert "mnemo_" in response.text


class TestApiKey:
    """Test API key middleware."""

    @pytest.fixture
    def secured(self, settings):
        secured = settings.model_copy(update={"api_key_enabled": True, "api_key": SecretStr("s3cret")})
        with patch("mnemo.api.main.get_settings", return_value=secured):
            yield

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, client, secured):
        response = await client.get("/api/v1/status")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_wrong_key_is_rejected(self, client, secured):
        response = await client.get("/api/v1/status", headers={"X-API-Key": "guess"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid API key"

    @pytest.mark.asyncio
    async def test_valid_key_is_accepted(self, client, secured):
        response = await client.get("/api/v1/status", headers={"X-API-Key": "s3cret"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_health_is_public(self, client, secured):
        response = await client.get("/health/live")

        assert response.status_code == 200
