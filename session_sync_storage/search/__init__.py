"""
Search capabilities for session storage.

Provides:
- Full-text search (keyword-based, owner-scoped)
- Semantic search (embedding-based)
- Hybrid search (weighted rank fusion of both)
- LLM context assembly from the most relevant sessions
"""

from .fusion import FusedResult, fuse_ranked_lists, fuse_with_scores
from .retrieval import CONTEXT_MESSAGE_LIMIT, EMPTY_QUERY_STATE, RetrievalEngine

__all__ = [
    "CONTEXT_MESSAGE_LIMIT",
    "EMPTY_QUERY_STATE",
    "FusedResult",
    "RetrievalEngine",
    "fuse_ranked_lists",
    "fuse_with_scores",
]
