"""Hosted provider backed by the Anthropic Messages API."""

import time

import anthropic
import structlog

from mnemo.core.exceptions import BackendUnreachableError, ProviderResponseInvalidError
from mnemo.llm.base import ModelProvider
from mnemo.models.schemas import BackendHealth, BackendKind

logger = structlog.get_logger(__name__)


class AnthropicProvider(ModelProvider):
    """
    Claude via ``anthropic.AsyncAnthropic``.

    Usage:
        provider = AnthropicProvider(api_key, model="claude-3-5-haiku-latest")
        classification = await provider.classify("Debugging a null pointer")
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 60.0,
        max_input_chars: int = 4000,
        max_tokens: int = 1024,
    ) -> None:
        super().__init__(model, max_input_chars)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )
        self.max_tokens = max_tokens

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.1,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as e:
            raise BackendUnreachableError(self.name, f"Request timed out: {e}") from e
        except anthropic.APIConnectionError as e:
            raise BackendUnreachableError(self.name, f"Connection failed: {e}") from e
        except anthropic.RateLimitError as e:
            raise BackendUnreachableError(self.name, f"Rate limited: {e}", {"status_code": 429}) from e
        except anthropic.AuthenticationError as e:
            raise BackendUnreachableError(self.name, f"Authentication failed: {e}", {"status_code": 401}) from e
        except anthropic.APIStatusError as e:
            raise BackendUnreachableError(
                self.name,
                f"API error {e.status_code}: {e.message}",
                {"status_code": e.status_code},
            ) from e

        text_blocks = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        if not text_blocks:
            raise ProviderResponseInvalidError(self.name, "Response has no text content")
        return "".join(text_blocks)

    async def health_check(self) -> BackendHealth:
        start = time.perf_counter()
        try:
            await self.client.models.retrieve(self.model)
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
        await self.client.close()
