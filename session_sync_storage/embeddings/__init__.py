"""
Embedding providers and the session embedding indexer.

Provides:
- Abstract EmbeddingProvider interface
- OpenAI implementation
- LRU cache for hot query embeddings
- Resilience utilities (retry, circuit breaker)
- EmbeddingIndexer (sessions and messages) and the background IndexingQueue
"""

from .base import EmbeddingProvider
from .cache import EmbeddingCache
from .indexer import (
    EmbeddingIndexer,
    IndexingQueue,
    IndexOutcome,
    IndexTarget,
    compose_embedding_text,
    content_hash,
)
from .resilience import CircuitBreaker, CircuitOpenError, RetryConfig, retry_with_backoff

__all__ = [
    "EmbeddingProvider",
    "EmbeddingCache",
    "EmbeddingIndexer",
    "IndexingQueue",
    "IndexOutcome",
    "IndexTarget",
    "compose_embedding_text",
    "content_hash",
    "CircuitBreaker",
    "CircuitOpenError",
    "RetryConfig",
    "retry_with_backoff",
]
