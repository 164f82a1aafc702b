"""Local-inference provider backed by an Ollama server."""

import time
from typing import Optional

import httpx
import structlog

from mnemo.core.exceptions import BackendUnreachableError, ProviderResponseInvalidError
from mnemo.llm.base import ModelProvider
from mnemo.models.schemas import BackendHealth, BackendKind

logger = structlog.get_logger(__name__)


class OllamaProvider(ModelProvider):
    """
    Ollama ``/api/generate`` in JSON mode.

    Usage:
        provider = OllamaProvider("http://localhost:11434", "llama3.1:latest")
        relations = await provider.extract_relations(memories)
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        max_input_chars: int = 4000,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model, max_input_chars)
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self._client.post(
                "/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                    "options": {"temperature": 0.1, "top_p": 0.9},
                },
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise BackendUnreachableError(self.name, f"Request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise BackendUnreachableError(
                self.name,
                f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                {"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise BackendUnreachableError(self.name, f"Connection failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderResponseInvalidError(self.name, "Response body is not JSON") from e
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise ProviderResponseInvalidError(self.name, "Missing 'response' field")
        return text

    async def health_check(self) -> BackendHealth:
        """Reachable only if the server answers and has the configured model."""
        start = time.perf_counter()
        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
            models = [model.get("name") for model in response.json().get("models", [])]
        except Exception as e:
            return BackendHealth(
                name=self.name,
                kind=BackendKind.EMBEDDED,
                reachable=False,
                error=f"{type(e).__name__}: {e}",
            )
        if self.model not in models:
            return BackendHealth(
                name=self.name,
                kind=BackendKind.EMBEDDED,
                reachable=False,
                error=f"model {self.model} not pulled",
            )
        return BackendHealth(
            name=self.name,
            kind=BackendKind.EMBEDDED,
            reachable=True,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def close(self) -> None:
        await self._client.aclose()
