"""
Owner-scoped lexical, semantic and hybrid retrieval over sessions and
messages, plus LLM context assembly from the most relevant sessions.

All reads are anonymous-tolerant: a caller without an owner identity gets
empty results rather than an error. Every backend call carries the owner, so
no result ever crosses the owner boundary.
"""

from __future__ import annotations

import asyncio
import logging

from ..backends.base import (
    ContextMessage,
    Message,
    MessageHit,
    MessagePage,
    Part,
    RetrievalContext,
    Session,
    SessionPage,
    StorageBackend,
)
from ..content_extraction import join_text_parts
from ..embeddings.base import EmbeddingProvider
from ..exceptions import ConfigurationError, ValidationError
from ..identity import optional_owner
from .fusion import fuse_ranked_lists, validate_semantic_weight

logger = logging.getLogger(__name__)

EMPTY_QUERY_STATE = "enter a query"

# Most recent messages rendered per session by get_context
CONTEXT_MESSAGE_LIMIT = 10
CONTEXT_FORMATS = ("text", "messages")


def _check_limit(limit: int) -> int:
    if limit < 1:
        raise ValidationError("limit", "must be a positive integer", value=str(limit))
    return limit


class RetrievalEngine:
    """Answers search requests against a storage backend."""

    def __init__(
        self,
        backend: StorageBackend,
        embedding_provider: EmbeddingProvider | None = None,
    ):
        self.backend = backend
        self.embedding_provider = embedding_provider

    def _require_provider(self, operation: str) -> EmbeddingProvider:
        if self.embedding_provider is None:
            raise ConfigurationError(
                "embedding_provider", f"{operation} needs an embedding provider"
            )
        return self.embedding_provider

    # =========================================================================
    # Lexical
    # =========================================================================

    async def search_sessions_lexical(
        self, owner_id: str | None, query: str, limit: int = 20
    ) -> list[Session]:
        """Full-text match over the owner's session searchable text."""
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None or not query or not query.strip():
            return []
        return await self.backend.search_sessions_full_text(owner, query, limit=limit)

    async def search_sessions_paginated(
        self, owner_id: str | None, query: str, limit: int = 20, cursor: int = 0
    ) -> SessionPage:
        """A page of session matches; an empty query pages recent sessions instead."""
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None:
            return SessionPage(sessions=[])

        # One extra row tells whether another page exists
        if query and query.strip():
            rows = await self.backend.search_sessions_full_text(
                owner, query, limit=limit + 1, offset=cursor
            )
        else:
            rows = await self.backend.list_sessions(owner, limit=limit + 1, offset=cursor)

        has_more = len(rows) > limit
        return SessionPage(sessions=rows[:limit], next_cursor=cursor + limit if has_more else None)

    async def _owns_session(self, owner: str, session_id: str) -> bool:
        session = await self.backend.get_session(session_id)
        return session is not None and session.user_id == owner

    async def search_messages_lexical(
        self,
        owner_id: str | None,
        query: str,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[MessageHit]:
        """Full-text match over message text, optionally within one session."""
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None or not query or not query.strip():
            return []
        if session_id is not None and not await self._owns_session(owner, session_id):
            return []
        return await self.backend.search_messages_full_text(
            owner, query, limit=limit, session_id=session_id
        )

    async def search_messages_paginated(
        self,
        owner_id: str | None,
        query: str,
        session_id: str | None = None,
        limit: int = 20,
        cursor: int = 0,
    ) -> MessagePage:
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None:
            return MessagePage(messages=[])
        if not query or not query.strip():
            return MessagePage(messages=[], empty_state=EMPTY_QUERY_STATE)
        if session_id is not None and not await self._owns_session(owner, session_id):
            return MessagePage(messages=[])

        rows = await self.backend.search_messages_full_text(
            owner, query, limit=limit + 1, session_id=session_id, offset=cursor
        )
        has_more = len(rows) > limit
        return MessagePage(messages=rows[:limit], next_cursor=cursor + limit if has_more else None)

    # =========================================================================
    # Semantic
    # =========================================================================

    async def search_semantic(
        self, owner_id: str | None, query: str, limit: int = 10
    ) -> list[Session]:
        """
        Nearest sessions to the query embedding.

        Fetches twice the limit in candidates, drops duplicate sessions and
        truncates to ``limit``.

        Raises:
            ConfigurationError: If no embedding provider is configured
        """
        provider = self._require_provider("semantic search")
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None or not query or not query.strip():
            return []

        query_vector = await provider.embed_text(query)
        hits = await self.backend.vector_search(owner, query_vector, top_k=limit * 2)

        session_ids = list(dict.fromkeys(hit.session_id for hit in hits))
        sessions = await self.backend.get_sessions_by_ids(owner, session_ids)
        return sessions[:limit]

    # =========================================================================
    # Hybrid
    # =========================================================================

    async def search_hybrid(
        self,
        owner_id: str | None,
        query: str,
        limit: int = 20,
        semantic_weight: float = 0.5,
    ) -> list[Session]:
        """
        Lexical and semantic search fused by weighted rank.

        Both searches run concurrently with the same limit; see
        ``search.fusion`` for the scoring and tie-break rules.

        Raises:
            ValidationError: If semantic_weight is outside [0, 1]
            ConfigurationError: If no embedding provider is configured
        """
        semantic_weight = validate_semantic_weight(semantic_weight)
        self._require_provider("hybrid search")
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None or not query or not query.strip():
            return []

        lexical, semantic = await asyncio.gather(
            self.search_sessions_lexical(owner, query, limit=limit),
            self.search_semantic(owner, query, limit=limit),
        )
        logger.debug(
            f"Hybrid search: {len(lexical)} lexical, {len(semantic)} semantic candidates"
        )
        return fuse_ranked_lists(
            lexical, semantic, semantic_weight, limit=limit, key=lambda s: s.id
        )

    # =========================================================================
    # Message-level semantic and hybrid
    # =========================================================================

    async def search_messages_semantic(
        self,
        owner_id: str | None,
        query: str,
        session_id: str | None = None,
        limit: int = 20,
    ) -> list[MessageHit]:
        """
        Nearest messages to the query embedding, optionally within one session.

        Like ``search_semantic``, fetches twice the limit in candidates before
        resolving and truncating.

        Raises:
            ConfigurationError: If no embedding provider is configured
        """
        provider = self._require_provider("message semantic search")
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None or not query or not query.strip():
            return []
        if session_id is not None and not await self._owns_session(owner, session_id):
            return []

        query_vector = await provider.embed_text(query)
        hits = await self.backend.message_vector_search(
            owner, query_vector, top_k=limit * 2, session_id=session_id
        )

        message_ids = list(dict.fromkeys(hit.message_id for hit in hits))
        found = await self.backend.get_message_hits(owner, message_ids)
        return found[:limit]

    async def search_messages_hybrid(
        self,
        owner_id: str | None,
        query: str,
        session_id: str | None = None,
        limit: int = 20,
        semantic_weight: float = 0.5,
    ) -> list[MessageHit]:
        """
        Lexical and semantic message search fused by weighted rank.

        Raises:
            ValidationError: If semantic_weight is outside [0, 1]
            ConfigurationError: If no embedding provider is configured
        """
        semantic_weight = validate_semantic_weight(semantic_weight)
        self._require_provider("message hybrid search")
        _check_limit(limit)
        owner = optional_owner(owner_id)
        if owner is None or not query or not query.strip():
            return []

        lexical, semantic = await asyncio.gather(
            self.search_messages_lexical(owner, query, session_id=session_id, limit=limit),
            self.search_messages_semantic(owner, query, session_id=session_id, limit=limit),
        )
        return fuse_ranked_lists(
            lexical, semantic, semantic_weight, limit=limit, key=lambda h: h.message.id
        )

    # =========================================================================
    # LLM context
    # =========================================================================

    async def get_context(
        self,
        owner_id: str | None,
        query: str,
        limit: int = 5,
        format: str = "text",
    ) -> RetrievalContext:
        """
        The most relevant sessions with their last messages, ready for a prompt.

        Sessions come from ``search_semantic``. For each one the last
        CONTEXT_MESSAGE_LIMIT messages are rendered; a message's content is
        its text parts, else its text content.

        Args:
            format: "text" for one prompt-ready string, "messages" for
                role/content pairs tagged with their session

        Raises:
            ValidationError: If format is not "text" or "messages"
            ConfigurationError: If no embedding provider is configured
        """
        if format not in CONTEXT_FORMATS:
            raise ValidationError("format", "must be 'text' or 'messages'", value=format)

        owner = optional_owner(owner_id)
        sessions = await self.search_semantic(owner, query, limit=limit)

        recent: list[tuple[Session, list[tuple[Message, str]]]] = []
        for session in sessions:
            messages = (await self.backend.list_messages(session.id))[-CONTEXT_MESSAGE_LIMIT:]
            parts = await self.backend.list_parts([m.id for m in messages])
            recent.append(
                (session, [(m, _context_content(m, parts.get(m.id, []))) for m in messages])
            )

        if format == "messages":
            return RetrievalContext(
                session_count=len(sessions),
                messages=[
                    ContextMessage(
                        role=message.role.value,
                        content=content,
                        session_id=session.id,
                        session_title=session.title,
                    )
                    for session, rendered in recent
                    for message, content in rendered
                ],
            )

        lines = [f'Relevant coding sessions for: "{query}"\n\n']
        for session, rendered in recent:
            lines.append(f"--- Session: {session.title or 'Untitled'} ---\n")
            lines.append(f"Project: {session.project_path or 'N/A'}\n")
            lines.append(f"Model: {session.model or 'N/A'}\n\n")
            for message, content in rendered:
                lines.append(f"[{message.role.value.upper()}]\n{content}\n\n")
            lines.append("\n")
        return RetrievalContext(session_count=len(sessions), text="".join(lines))


def _context_content(message: Message, parts: list[Part]) -> str:
    return join_text_parts(parts) or message.text_content or ""
