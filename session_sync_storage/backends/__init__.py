"""
Storage backend abstraction layer.

``StorageBackend`` defines the persistence and retrieval capabilities the
ingestion and retrieval engines rely on; ``SQLiteBackend`` implements them
with aiosqlite, FTS5 and numpy.
"""

from .base import (
    BatchResult,
    ContextMessage,
    EmbeddingRecord,
    Message,
    MessageEmbeddingRecord,
    MessageHit,
    MessageInput,
    MessagePage,
    MessageRole,
    MessageVectorHit,
    MessageWithParts,
    Part,
    PartInput,
    RetrievalContext,
    Session,
    SessionDetail,
    SessionInput,
    SessionPage,
    StorageBackend,
    VectorHit,
)
from .sqlite import SQLiteBackend, SQLiteConfig, build_match_query

__all__ = [
    # Core classes
    "StorageBackend",
    "SQLiteBackend",
    "SQLiteConfig",
    "build_match_query",
    # Records
    "Session",
    "Message",
    "MessageRole",
    "Part",
    "EmbeddingRecord",
    "MessageEmbeddingRecord",
    # Inputs
    "SessionInput",
    "MessageInput",
    "PartInput",
    # Results
    "SessionDetail",
    "MessageWithParts",
    "MessageHit",
    "VectorHit",
    "MessageVectorHit",
    "SessionPage",
    "MessagePage",
    "BatchResult",
    "RetrievalContext",
    "ContextMessage",
]
