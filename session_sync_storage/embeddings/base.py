"""
Abstract base class for embedding providers.

A provider turns session text (at index time) and search queries (at query
time) into vectors of a fixed dimensionality. Both sides must use the same
provider and model for similarity scores to be meaningful.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """Abstract base for embedding generation."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Number of dimensions in the embedding vector."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the embedding model, stored alongside each vector."""

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """
        Generate the embedding for a single non-empty text.

        Raises:
            Exception: If embedding generation fails after retries
        """

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for several texts, same order as the input."""

    @abstractmethod
    async def close(self) -> None:
        """Release network clients and other resources."""

    async def __aenter__(self) -> EmbeddingProvider:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()
