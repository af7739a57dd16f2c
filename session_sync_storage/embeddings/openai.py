"""
OpenAI embedding provider.

Uses the official OpenAI Python SDK. Every request goes through
``retry_with_backoff`` and a shared circuit breaker.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from openai import AsyncOpenAI

from ..exceptions import ConfigurationError
from .base import EmbeddingProvider
from .cache import EmbeddingCache
from .resilience import EMBED_BATCH_SIZE, CircuitBreaker, RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"


class OpenAIEmbeddings(EmbeddingProvider):
    """
    OpenAI embedding provider with an LRU cache.

    Supports models:
    - text-embedding-3-small (1536 dimensions, default)
    - text-embedding-3-large (3072 dimensions)
    - text-embedding-ada-002 (1536 dimensions, fixed)
    """

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        dimensions: int | None = None,
        cache_size: int = 1000,
        base_url: str | None = None,
        retry_config: RetryConfig | None = None,
        circuit: CircuitBreaker | None = None,
    ):
        """
        Args:
            api_key: OpenAI API key
            model: Model name (default: text-embedding-3-small)
            dimensions: Vector dimensions (looked up from the model if None)
            cache_size: Max cached embeddings (0 to disable)
            base_url: Optional base URL for OpenAI-compatible endpoints
            retry_config: Backoff schedule for transient failures
            circuit: Circuit breaker shared by all calls of this provider
        """
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY", "an API key is required")

        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig()
        self.circuit = circuit or CircuitBreaker()

        if dimensions is None:
            dimensions = self.MODEL_DIMENSIONS.get(model)
            if dimensions is None:
                logger.warning(
                    f"Unknown model '{model}', assuming 1536 dimensions. "
                    f"Pass dimensions explicitly if different."
                )
                dimensions = 1536
        self._dimensions = dimensions

        self._client: AsyncOpenAI | None = None
        self._cache = EmbeddingCache(max_entries=cache_size) if cache_size > 0 else None

        logger.info(f"OpenAI embeddings initialized: model={model}, dimensions={dimensions}")

    @classmethod
    def from_env(cls) -> OpenAIEmbeddings:
        """
        Create provider from environment variables.

        Required env vars:
            OPENAI_API_KEY: OpenAI API key

        Optional env vars:
            OPENAI_EMBEDDING_MODEL: Model name (default: text-embedding-3-small)
            OPENAI_EMBEDDING_DIMENSIONS: Vector dimensions
            OPENAI_EMBEDDING_CACHE_SIZE: Cache size (default: 1000)
            OPENAI_BASE_URL: Custom base URL

        Raises:
            ConfigurationError: If OPENAI_API_KEY is not set
        """
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY", "environment variable not set")

        dimensions_str = os.environ.get("OPENAI_EMBEDDING_DIMENSIONS")
        return cls(
            api_key=api_key,
            model=os.environ.get("OPENAI_EMBEDDING_MODEL", DEFAULT_MODEL),
            dimensions=int(dimensions_str) if dimensions_str else None,
            cache_size=int(os.environ.get("OPENAI_EMBEDDING_CACHE_SIZE", "1000")),
            base_url=os.environ.get("OPENAI_BASE_URL"),
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self.model

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def _create(self, inputs: list[str]) -> list[list[float]]:
        kwargs: dict[str, Any] = {"input": inputs, "model": self.model}
        # Only the text-embedding-3 family accepts a dimensions override
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        response = await retry_with_backoff(
            self._ensure_client().embeddings.create,
            config=self.retry_config,
            circuit=self.circuit,
            context_msg=f"{self.model} x{len(inputs)}",
            **kwargs,
        )
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    async def embed_text(self, text: str) -> list[float]:
        if self._cache:
            cached = self._cache.get(text, self.model)
            if cached is not None:
                return cached

        embedding = (await self._create([text]))[0]

        if self._cache:
            self._cache.put(text, self.model, embedding)
        return embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in requests of EMBED_BATCH_SIZE, serving cache hits locally."""
        if not texts:
            return []

        results: list[list[float] | None] = [None] * len(texts)
        pending: list[int] = []
        for i, text in enumerate(texts):
            cached = self._cache.get(text, self.model) if self._cache else None
            if cached is None:
                pending.append(i)
            else:
                results[i] = cached

        for start in range(0, len(pending), EMBED_BATCH_SIZE):
            indices = pending[start : start + EMBED_BATCH_SIZE]
            vectors = await self._create([texts[i] for i in indices])
            for i, vector in zip(indices, vectors, strict=True):
                results[i] = vector
                if self._cache:
                    self._cache.put(texts[i], self.model, vector)

        if pending:
            logger.debug(
                f"Generated {len(pending)} embeddings, {len(texts) - len(pending)} from cache"
            )
        return [vector for vector in results if vector is not None]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def get_cache_stats(self) -> dict[str, Any]:
        if self._cache:
            return self._cache.stats()
        return {"cache_enabled": False}
