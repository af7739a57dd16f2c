"""
Shared test configuration and fixtures.

Everything runs against a real in-memory SQLite database. Embeddings come
from a deterministic bag-of-words mock so that texts sharing words are
actually close in vector space.
"""

import hashlib
import logging
import math
import re

import pytest

from session_sync_storage.backends.sqlite import SQLiteBackend, SQLiteConfig
from session_sync_storage.embeddings import EmbeddingIndexer, EmbeddingProvider
from session_sync_storage.ingestion import IngestionEngine
from session_sync_storage.search import RetrievalEngine

logger = logging.getLogger(__name__)

MOCK_DIMENSIONS = 64


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Mock embedding provider for testing without API costs.

    Each word is hashed (sha256, stable across runs) into one of
    ``dimensions`` buckets; the vector is the L2-normalized bucket count.
    """

    def __init__(self, dimensions: int = MOCK_DIMENSIONS):
        self._dimensions = dimensions
        self._model_name = "mock-embeddings"
        self.calls: list[str] = []
        self.fail_next = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_text(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionError("mock embedding service unavailable")

        vector = [0.0] * self._dimensions
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.sha256(word.encode()).hexdigest(), 16) % self._dimensions
            vector[bucket] += 1.0

        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_text(text) for text in texts]

    async def close(self) -> None:
        pass


@pytest.fixture
async def backend():
    """Initialized in-memory SQLite backend."""
    config = SQLiteConfig(db_path=":memory:", vector_dimensions=MOCK_DIMENSIONS)
    storage = await SQLiteBackend.create(config=config)
    yield storage
    await storage.close()


@pytest.fixture
async def embedding_provider():
    provider = MockEmbeddingProvider()
    yield provider
    await provider.close()


@pytest.fixture
def engine(backend):
    """Ingestion engine without background indexing."""
    return IngestionEngine(backend)


@pytest.fixture
def indexer(backend, embedding_provider):
    return EmbeddingIndexer(backend, embedding_provider)


@pytest.fixture
def retrieval(backend, embedding_provider):
    return RetrievalEngine(backend, embedding_provider)


@pytest.fixture
def lexical_only_retrieval(backend):
    return RetrievalEngine(backend, embedding_provider=None)
