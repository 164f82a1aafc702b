"""Unit tests for the model provider gateway."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest
from pydantic import SecretStr

from mnemo.core.exceptions import BackendUnreachableError, ConfigurationError, ProviderResponseInvalidError
from mnemo.llm.anthropic_provider import AnthropicProvider
from mnemo.llm.base import clamp_confidence, normalize_concepts, normalize_kind, normalize_label, parse_json_response
from mnemo.llm.factory import create_provider
from mnemo.llm.ollama_provider import OllamaProvider
from mnemo.models.schemas import ClassificationLabel, Memory, RelationKind


class TestNormalization:
    """Parsing and normalizing raw model output."""

    def test_parse_plain_json(self):
        assert parse_json_response("x", '{"label": "factual"}') == {"label": "factual"}

    def test_parse_strips_code_fences(self):
        text = '```json\n{"label": "technical", "confidence": 0.7}\n```'

        assert parse_json_response("x", text)["confidence"] == 0.7

    def test_parse_finds_object_inside_chatter(self):
        text = 'Sure! Here is the result: {"relations": []} Hope that helps.'

        assert parse_json_response("x", text) == {"relations": []}

    def test_parse_rejects_non_json(self):
        with pytest.raises(ProviderResponseInvalidError):
            parse_json_response("x", "I cannot help with that")

    def test_parse_rejects_json_array(self):
        with pytest.raises(ProviderResponseInvalidError):
            parse_json_response("x", "[1, 2, 3]")

    def test_unknown_label_maps_to_other(self):
        assert normalize_label("Technical ") == ClassificationLabel.TECHNICAL
        assert normalize_label("philosophical") == ClassificationLabel.OTHER

    def test_relation_kind_spelling_variants(self):
        assert normalize_kind("Depends-On") == RelationKind.DEPENDS_ON
        assert normalize_kind("same topic") == RelationKind.SAME_TOPIC
        assert normalize_kind("causes") == RelationKind.RELATED_TO

    def test_confidence_is_clamped(self):
        assert clamp_confidence(1.7) == 1.0
        assert clamp_confidence(-3) == 0.0
        assert clamp_confidence("0.25") == 0.25
        assert clamp_confidence(None) == 0.0
        assert clamp_confidence(float("nan")) == 0.0

    def test_concepts_deduped_case_insensitively(self):
        assert normalize_concepts(["SQLite", " sqlite ", "", 3, "WAL"]) == ["SQLite", "WAL"]
        assert normalize_concepts("not a list") == []


class TestSharedBehaviour:
    """classify/extract_relations logic in the base class, driven by the fake provider."""

    @pytest.mark.asyncio
    async def test_classify_returns_normalized_shape(self, fake_provider):
        fake_provider.label = "PROCEDURAL"
        fake_provider.concepts = ["backup", "Backup", "cron"]
        fake_provider.confidence = 3

        result = await fake_provider.classify("Run the backup script nightly")

        assert result.label == ClassificationLabel.PROCEDURAL
        assert result.concepts == ["backup", "cron"]
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_classify_rejects_empty_and_oversized_input(self, fake_provider):
        with pytest.raises(ValueError):
            await fake_provider.classify("   ")
        with pytest.raises(ValueError):
            await fake_provider.classify("x" * (fake_provider.max_input_chars + 1))
        assert fake_provider.prompts == []

    @pytest.mark.asyncio
    async def test_classify_without_label_is_invalid(self, fake_provider):
        fake_provider.raw = '{"concepts": ["a"]}'

        with pytest.raises(ProviderResponseInvalidError):
            await fake_provider.classify("something")

    @pytest.mark.asyncio
    async def test_relations_drop_unknown_and_self_references(self, fake_provider):
        first = Memory(id="a", category="x", content="one")
        second = Memory(id="b", category="x", content="two")
        fake_provider.relations = [
            {"source": "a", "target": "b", "kind": "elaborates", "confidence": 0.4},
            {"source": "a", "target": "b", "kind": "elaborates", "confidence": 0.9},
            {"source": "a", "target": "a", "kind": "related_to", "confidence": 0.9},
            {"source": "a", "target": "zzz", "kind": "related_to", "confidence": 0.9},
        ]

        relations = await fake_provider.extract_relations([first, second])

        assert len(relations) == 1
        assert relations[0].kind == RelationKind.ELABORATES
        assert relations[0].confidence == 0.9

    @pytest.mark.asyncio
    async def test_relations_need_two_memories(self, fake_provider):
        assert await fake_provider.extract_relations([Memory(category="x", content="alone")]) == []
        assert fake_provider.prompts == []


class TestOllamaProvider:
    """Ollama over a mocked HTTP transport."""

    @staticmethod
    def make_provider(handler) -> OllamaProvider:
        client = httpx.AsyncClient(base_url="http://ollama.test", transport=httpx.MockTransport(handler))
        return OllamaProvider("http://ollama.test", "llama3.1:latest", client=client)

    @pytest.mark.asyncio
    async def test_classify_round_trip(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            payload = {"label": "factual", "concepts": ["Paris"], "confidence": 0.8}
            return httpx.Response(200, json={"response": json.dumps(payload)})

        provider = self.make_provider(handler)
        result = await provider.classify("Paris is the capital of France")
        await provider.close()

        assert result.label == ClassificationLabel.FACTUAL
        assert seen["body"]["model"] == "llama3.1:latest"
        assert seen["body"]["format"] == "json"
        assert seen["body"]["stream"] is False

    @pytest.mark.asyncio
    async def test_http_error_is_unreachable(self):
        provider = self.make_provider(lambda request: httpx.Response(503, text="loading model"))

        with pytest.raises(BackendUnreachableError) as exc_info:
            await provider.classify("anything")

        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = self.make_provider(handler)

        with pytest.raises(BackendUnreachableError):
            await provider.classify("anything")

    @pytest.mark.asyncio
    async def test_missing_response_field_is_invalid(self):
        provider = self.make_provider(lambda request: httpx.Response(200, json={"done": True}))

        with pytest.raises(ProviderResponseInvalidError):
            await provider.classify("anything")

    @pytest.mark.asyncio
    async def test_health_requires_pulled_model(self):
        provider = self.make_provider(
            lambda request: httpx.Response(200, json={"models": [{"name": "mistral:latest"}]})
        )

        health = await provider.health_check()

        assert health.reachable is False
        assert "not pulled" in health.error

    @pytest.mark.asyncio
    async def test_health_reachable(self):
        provider = self.make_provider(
            lambda request: httpx.Response(200, json={"models": [{"name": "llama3.1:latest"}]})
        )

        health = await provider.health_check()

        assert health.reachable is True
        assert health.latency_ms is not None


class TestAnthropicProvider:
    """Anthropic with the SDK client mocked out."""

    @pytest.fixture
    def provider(self):
        provider = AnthropicProvider(api_key="sk-test", model="claude-3-5-haiku-latest")
        provider.client = AsyncMock()
        return provider

    @pytest.mark.asyncio
    async def test_classify_joins_text_blocks(self, provider):
        provider.client.messages.create.return_value = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text='{"label": "emotional", '),
                SimpleNamespace(type="text", text='"concepts": ["joy"], "confidence": 0.6}'),
            ]
        )

        result = await provider.classify("A great day at the lake")

        assert result.label == ClassificationLabel.EMOTIONAL
        kwargs = provider.client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-3-5-haiku-latest"

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self, provider):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        provider.client.messages.create.side_effect = anthropic.APIConnectionError(request=request)

        with pytest.raises(BackendUnreachableError):
            await provider.classify("anything")

    @pytest.mark.asyncio
    async def test_empty_content_is_invalid(self, provider):
        provider.client.messages.create.return_value = SimpleNamespace(content=[])

        with pytest.raises(ProviderResponseInvalidError):
            await provider.classify("anything")

    @pytest.mark.asyncio
    async def test_health_check_failure_is_reported(self, provider):
        provider.client.models.retrieve.side_effect = RuntimeError("401")

        health = await provider.health_check()

        assert health.reachable is False
        assert "401" in health.error


class TestFactory:
    """create_provider selection."""

    def test_defaults_to_ollama(self, settings):
        provider = create_provider(settings)

        assert isinstance(provider, OllamaProvider)
        assert provider.model == settings.ollama_model

    def test_anthropic_requires_key(self, settings):
        configured = settings.model_copy(update={"llm_provider": "anthropic", "anthropic_api_key": None})

        with pytest.raises(ConfigurationError):
            create_provider(configured)

    def test_anthropic_with_key(self, settings):
        configured = settings.model_copy(
            update={"llm_provider": "anthropic", "anthropic_api_key": SecretStr("sk-test")}
        )

        provider = create_provider(configured)

        assert isinstance(provider, AnthropicProvider)
