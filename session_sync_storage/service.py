"""
One object wiring storage, ingestion, indexing and retrieval together.

    >>> async with await SessionSyncService.create() as service:
    ...     await service.ingestion.upsert_session(owner, SessionInput(external_id="s1"))
    ...     await service.retrieval.search_hybrid(owner, "login bug")
"""

from __future__ import annotations

import logging
from typing import Any

from .backends.base import StorageBackend
from .backends.sqlite import SQLiteBackend, SQLiteConfig
from .embeddings.base import EmbeddingProvider
from .embeddings.indexer import EmbeddingIndexer, IndexingQueue
from .embeddings.openai import OpenAIEmbeddings
from .exceptions import ConfigurationError
from .ingestion import IngestionConfig, IngestionEngine
from .search.retrieval import RetrievalEngine

logger = logging.getLogger(__name__)


class SessionSyncService:
    """Owns the backend and the background indexing queue."""

    def __init__(
        self,
        backend: StorageBackend,
        embedding_provider: EmbeddingProvider | None = None,
        ingestion_config: IngestionConfig | None = None,
        index_workers: int = 1,
    ):
        self.backend = backend
        self.embedding_provider = embedding_provider

        self.indexing_queue: IndexingQueue | None = None
        if embedding_provider is not None:
            indexer = EmbeddingIndexer(backend, embedding_provider)
            self.indexing_queue = IndexingQueue(indexer, workers=index_workers)

        self.ingestion = IngestionEngine(backend, self.indexing_queue, ingestion_config)
        self.retrieval = RetrievalEngine(backend, embedding_provider)

    @classmethod
    async def create(
        cls,
        sqlite_config: SQLiteConfig | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        ingestion_config: IngestionConfig | None = None,
    ) -> SessionSyncService:
        """Create a service on an initialized SQLite backend."""
        backend = await SQLiteBackend.create(sqlite_config)
        return cls(backend, embedding_provider, ingestion_config)

    @classmethod
    async def from_env(cls) -> SessionSyncService:
        """
        Create a service configured from environment variables.

        Semantic and hybrid search stay unavailable (lexical search keeps
        working) when OPENAI_API_KEY is not set.
        """
        provider: EmbeddingProvider | None
        try:
            provider = OpenAIEmbeddings.from_env()
        except ConfigurationError as e:
            logger.warning(f"Embeddings disabled: {e}")
            provider = None

        return await cls.create(SQLiteConfig.from_env(), provider, IngestionConfig.from_env())

    async def drain_indexing(self) -> None:
        """Wait for queued embedding jobs to finish."""
        if self.indexing_queue is not None:
            await self.indexing_queue.drain()

    async def close(self) -> None:
        if self.indexing_queue is not None:
            await self.indexing_queue.stop()
        if self.embedding_provider is not None:
            await self.embedding_provider.close()
        await self.backend.close()

    async def __aenter__(self) -> SessionSyncService:
        await self.backend.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
