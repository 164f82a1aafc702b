"""
OpenAI Embeddings Service.

Turns memory text into vectors for the Pinecone store, with retries on rate
limits and transient API errors.
"""

from __future__ import annotations

import structlog
from openai import APIConnectionError, APIError, AsyncOpenAI, RateLimitError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mnemo.core.exceptions import BackendUnreachableError

logger = structlog.get_logger(__name__)


class EmbeddingsService:
    """
    OpenAI embeddings service.

    Usage:
        service = EmbeddingsService(api_key, model="text-embedding-3-small")
        embedding = await service.embed_text("Debugging a null pointer")
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.dimension = dimension
        self._timeout = timeout
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        """Get or create the OpenAI async client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout)
        return self._client

    @retry(
        retry=retry_if_exception_type((RateLimitError, APIConnectionError)),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "openai_retry",
            attempt=retry_state.attempt_number,
            wait=retry_state.next_action.sleep,
        ),
    )
    async def _embed_request(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(
            model=self.model,
            input=text,
            dimensions=self.dimension,
        )
        return response.data[0].embedding

    async def embed_text(self, text: str) -> list[float]:
        """
        Generate an embedding for a single text.

        Raises:
            ValueError: If text is empty.
            BackendUnreachableError: If OpenAI keeps failing.
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        try:
            embedding = await self._embed_request(text)
        except APIError as e:
            raise BackendUnreachableError("openai", f"Embedding request failed: {e}") from e

        logger.debug("embedding_generated", text_length=len(text), dimension=len(embedding))
        return embedding

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
