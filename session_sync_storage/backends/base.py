"""
Data model and abstract base class for storage backends.

The backend owns persistence plus the two retrieval capabilities the rest of
the library treats as black boxes: full-text matching and vector similarity.
All owner scoping happens inside the backend queries.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..content_extraction import PartContent, decode_part


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any) -> MessageRole:
        """Map any plugin-supplied role onto a known role (default: unknown)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


# =============================================================================
# Stored records
# =============================================================================


@dataclass
class Session:
    """One activity container per plugin run, unique per (user_id, external_id)."""

    id: str
    user_id: str
    external_id: str
    title: str | None = None
    project_path: str | None = None
    project_name: str | None = None
    model: str | None = None
    provider: str | None = None
    source: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    duration_ms: int | None = None
    is_public: bool = False
    public_slug: str | None = None
    searchable_text: str | None = None
    summary: str | None = None
    message_count: int = 0
    eval_ready: bool = False
    eval_tags: list[str] = field(default_factory=list)
    eval_notes: str | None = None
    reviewed_at: int | None = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class Message:
    """One turn within a session. ``external_id`` is globally unique."""

    id: str
    session_id: str
    external_id: str
    role: MessageRole
    text_content: str | None = None
    model: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    duration_ms: int | None = None
    created_at: int = 0


@dataclass
class Part:
    """One ordered content fragment of a message."""

    id: str
    message_id: str
    type: str
    content: Any
    order: int

    @property
    def decoded(self) -> PartContent:
        return decode_part(self.type, self.content)


@dataclass
class EmbeddingRecord:
    """The current embedding of a session's text, tagged with its owner."""

    id: str
    session_id: str
    user_id: str
    embedding: list[float]
    text_hash: str
    embedding_model: str | None = None
    created_at: int = 0


@dataclass
class MessageEmbeddingRecord:
    """The current embedding of a single message, tagged with its session and owner."""

    id: str
    message_id: str
    session_id: str
    user_id: str
    embedding: list[float]
    text_hash: str
    embedding_model: str | None = None
    created_at: int = 0


# =============================================================================
# Inputs from plugins
# =============================================================================


@dataclass
class PartInput:
    type: str
    content: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> PartInput:
        if isinstance(payload, PartInput):
            return payload
        if isinstance(payload, dict):
            return cls(type=str(payload.get("type") or "unknown"), content=payload.get("content"))
        return cls(type="unknown", content=payload)


@dataclass
class SessionInput:
    """Partial session fields as delivered by a plugin. ``None`` means "not sent"."""

    external_id: str
    title: str | None = None
    project_path: str | None = None
    project_name: str | None = None
    model: str | None = None
    provider: str | None = None
    source: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost: float | None = None
    duration_ms: int | None = None
    created_at: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SessionInput:
        """Build from a plugin JSON body (accepts ``externalId`` or ``sessionId``)."""
        return cls(
            external_id=payload.get("externalId") or payload.get("sessionId") or "",
            title=payload.get("title"),
            project_path=payload.get("projectPath"),
            project_name=payload.get("projectName"),
            model=payload.get("model"),
            provider=payload.get("provider"),
            source=payload.get("source"),
            prompt_tokens=payload.get("promptTokens"),
            completion_tokens=payload.get("completionTokens"),
            cost=payload.get("cost"),
            duration_ms=payload.get("durationMs"),
            created_at=payload.get("createdAt"),
        )


@dataclass
class MessageInput:
    """A message upsert as delivered by a plugin. ``parts=None`` means "not sent"."""

    session_external_id: str
    external_id: str
    role: MessageRole | str = MessageRole.UNKNOWN
    text_content: str | None = None
    model: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    duration_ms: int | None = None
    source: str | None = None
    parts: list[PartInput] | None = None
    created_at: int | None = None

    def __post_init__(self) -> None:
        self.role = MessageRole.coerce(self.role)
        if self.parts is not None:
            self.parts = [PartInput.from_payload(p) for p in self.parts]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> MessageInput:
        return cls(
            session_external_id=payload.get("sessionExternalId") or "",
            external_id=payload.get("externalId") or "",
            role=payload.get("role") or MessageRole.UNKNOWN,
            text_content=payload.get("textContent"),
            model=payload.get("model"),
            prompt_tokens=payload.get("promptTokens"),
            completion_tokens=payload.get("completionTokens"),
            duration_ms=payload.get("durationMs"),
            source=payload.get("source"),
            parts=payload.get("parts"),
            created_at=payload.get("createdAt"),
        )


# =============================================================================
# Result containers
# =============================================================================


@dataclass
class MessageWithParts:
    message: Message
    parts: list[Part] = field(default_factory=list)


@dataclass
class SessionDetail:
    """A session with its messages (creation order) and their parts (part order)."""

    session: Session
    messages: list[MessageWithParts] = field(default_factory=list)


@dataclass
class MessageHit:
    """A message search match with the owning session's display fields."""

    message: Message
    session_title: str | None = None
    project_path: str | None = None
    project_name: str | None = None


@dataclass
class VectorHit:
    session_id: str
    score: float


@dataclass
class MessageVectorHit:
    message_id: str
    score: float


@dataclass
class SessionPage:
    sessions: list[Session]
    next_cursor: int | None = None


@dataclass
class MessagePage:
    messages: list[MessageHit]
    next_cursor: int | None = None
    empty_state: str | None = None  # set when no query was entered


@dataclass
class ContextMessage:
    """One message of a retrieved session, flattened for an LLM prompt."""

    role: str
    content: str
    session_id: str
    session_title: str | None = None


@dataclass
class RetrievalContext:
    """
    Relevant sessions rendered for an LLM.

    Exactly one of ``text`` (the "text" format) and ``messages`` (the
    "messages" format) is set.
    """

    session_count: int
    text: str | None = None
    messages: list[ContextMessage] | None = None


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class StorageBackend(ABC):
    """
    Abstract base for all storage backends.

    Implementations must support:
    - Session / message / part rows with their unique keys
    - Owner-scoped full-text search over session searchable text and
      message text content
    - Owner-scoped vector similarity search over session and message embeddings
    - Atomic multi-statement writes via ``transaction()``

    Write methods called outside ``transaction()`` run in their own
    single-statement transaction.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend (connections, schema, indexes)."""

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup resources."""

    async def __aenter__(self) -> StorageBackend:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @abstractmethod
    def transaction(self) -> Any:
        """Async context manager making the enclosed reads and writes one atomic unit."""

    # =========================================================================
    # Sessions
    # =========================================================================

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by internal id (no owner check; callers scope)."""

    @abstractmethod
    async def get_session_by_external_id(self, user_id: str, external_id: str) -> Session | None:
        """Resolve a session by its (owner, external id) key."""

    @abstractmethod
    async def get_session_by_slug(self, public_slug: str) -> Session | None:
        """Resolve a session by public slug (visibility is checked by callers)."""

    @abstractmethod
    async def get_sessions_by_ids(self, user_id: str, session_ids: list[str]) -> list[Session]:
        """Load the given sessions owned by ``user_id``, preserving input order."""

    @abstractmethod
    async def insert_session(self, session: Session) -> None:
        """Insert a new session row. Raises ConflictError on a duplicate key."""

    @abstractmethod
    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        """Patch the given columns of a session."""

    @abstractmethod
    async def list_sessions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        eval_ready: bool | None = None,
    ) -> list[Session]:
        """List an owner's sessions, most recently updated first."""

    @abstractmethod
    async def delete_session_cascade(self, session_id: str) -> None:
        """Delete a session with its messages, parts and embeddings."""

    # =========================================================================
    # Messages and parts
    # =========================================================================

    @abstractmethod
    async def get_message(self, message_id: str) -> Message | None:
        """Get a message by internal id (no owner check; callers scope)."""

    @abstractmethod
    async def get_message_by_external_id(self, external_id: str) -> Message | None:
        """Resolve a message by its global external id."""

    @abstractmethod
    async def insert_message(self, message: Message) -> None:
        """Insert a new message row. Raises ConflictError on a duplicate external id."""

    @abstractmethod
    async def update_message(self, message_id: str, fields: dict[str, Any]) -> None:
        """Patch the given columns of a message."""

    @abstractmethod
    async def list_messages(self, session_id: str) -> list[Message]:
        """List a session's messages in creation order."""

    @abstractmethod
    async def replace_parts(self, message_id: str, parts: list[PartInput]) -> list[Part]:
        """Delete every part of a message and insert ``parts`` with order = list index."""

    @abstractmethod
    async def list_parts(self, message_ids: list[str]) -> dict[str, list[Part]]:
        """Load parts for the given messages, each list sorted by order."""

    # =========================================================================
    # Embeddings
    # =========================================================================

    @abstractmethod
    async def get_embedding(self, session_id: str) -> EmbeddingRecord | None:
        """Get the current embedding of a session, if any."""

    @abstractmethod
    async def upsert_embedding(self, record: EmbeddingRecord) -> None:
        """Store ``record`` as the session's current embedding (replacing any previous)."""

    @abstractmethod
    async def get_message_embedding(self, message_id: str) -> MessageEmbeddingRecord | None:
        """Get the current embedding of a message, if any."""

    @abstractmethod
    async def upsert_message_embedding(self, record: MessageEmbeddingRecord) -> None:
        """Store ``record`` as the message's current embedding (replacing any previous)."""

    # =========================================================================
    # Retrieval capabilities
    # =========================================================================

    @abstractmethod
    async def search_sessions_full_text(
        self, user_id: str, query: str, limit: int = 20, offset: int = 0
    ) -> list[Session]:
        """Full-text match over searchable text, owner-scoped, relevance order."""

    @abstractmethod
    async def search_messages_full_text(
        self,
        user_id: str,
        query: str,
        limit: int = 50,
        session_id: str | None = None,
        offset: int = 0,
    ) -> list[MessageHit]:
        """Full-text match over message text, owner-scoped, relevance order."""

    @abstractmethod
    async def vector_search(
        self, user_id: str, query_vector: list[float], top_k: int = 10
    ) -> list[VectorHit]:
        """Nearest session embeddings of ``user_id``, most similar first."""


    @abstractmethod
    async def message_vector_search(
        self,
        user_id: str,
        query_vector: list[float],
        top_k: int = 10,
        session_id: str | None = None,
    ) -> list[MessageVectorHit]:
        """Nearest message embeddings of ``user_id``, optionally within one session."""

    @abstractmethod
    async def get_message_hits(self, user_id: str, message_ids: list[str]) -> list[MessageHit]:
        """Load the given messages in sessions owned by ``user_id``, preserving input order."""
