"""
Session Sync Storage

Ingestion and retrieval of AI coding sessions streamed from sync plugins.

Provides:
- Idempotent, order-tolerant session and message upserts
- Aggregate token/cost counters and a bounded searchable-text projection
- Background session and message embedding with content-hash deduplication
- Lexical (FTS5), semantic (numpy cosine) and rank-fused hybrid search over
  sessions and messages, plus LLM context assembly

Usage:

    >>> from session_sync_storage import SessionSyncService, SessionInput, MessageInput
    >>> async with await SessionSyncService.create(embedding_provider=embeddings) as service:
    ...     await service.ingestion.upsert_session(owner_id, SessionInput(external_id="s1"))
    ...     await service.ingestion.upsert_message(
    ...         owner_id,
    ...         MessageInput(
    ...             session_external_id="s1",
    ...             external_id="m1",
    ...             role="user",
    ...             parts=[{"type": "text", "content": {"text": "fix login"}}],
    ...         ),
    ...     )
    ...     results = await service.retrieval.search_hybrid(owner_id, "login", semantic_weight=0.7)
"""

from .backends import (
    BatchResult,
    ContextMessage,
    Message,
    MessageHit,
    MessageInput,
    MessagePage,
    MessageRole,
    Part,
    PartInput,
    RetrievalContext,
    Session,
    SessionDetail,
    SessionInput,
    SessionPage,
    SQLiteBackend,
    SQLiteConfig,
    StorageBackend,
)
from .embeddings import (
    EmbeddingCache,
    EmbeddingIndexer,
    EmbeddingProvider,
    IndexingQueue,
    IndexOutcome,
)
from .embeddings.openai import OpenAIEmbeddings
from .exceptions import (
    ConfigurationError,
    ConflictError,
    IngestionError,
    SessionNotFoundError,
    SessionStorageError,
    StorageConnectionError,
    StorageIOError,
    UnauthenticatedError,
    ValidationError,
)
from .ingestion import IngestionConfig, IngestionEngine
from .logging_utils import configure_structured_logging
from .search import RetrievalEngine, fuse_ranked_lists
from .service import SessionSyncService

__all__ = [
    # Entry points
    "SessionSyncService",
    "IngestionEngine",
    "IngestionConfig",
    "RetrievalEngine",
    "fuse_ranked_lists",
    # Storage
    "StorageBackend",
    "SQLiteBackend",
    "SQLiteConfig",
    # Data model
    "Session",
    "Message",
    "MessageRole",
    "Part",
    "SessionInput",
    "MessageInput",
    "PartInput",
    "SessionDetail",
    "SessionPage",
    "MessagePage",
    "MessageHit",
    "BatchResult",
    "RetrievalContext",
    "ContextMessage",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingCache",
    "EmbeddingIndexer",
    "IndexingQueue",
    "IndexOutcome",
    "OpenAIEmbeddings",
    # Exceptions
    "SessionStorageError",
    "UnauthenticatedError",
    "ConfigurationError",
    "ValidationError",
    "SessionNotFoundError",
    "IngestionError",
    "ConflictError",
    "StorageIOError",
    "StorageConnectionError",
    # Logging
    "configure_structured_logging",
]

__version__ = "0.1.0"
