"""
Idempotent ingestion of sessions and messages from sync plugins.

Plugins may deliver the same event many times and in any order (a message
before its session, a session update after the messages). The engine keeps
stored state independent of delivery order and duplication:

- sessions are keyed by (owner, external id), messages by external id
- a message for an unknown session creates a placeholder session
- token totals only move forward; a zero never overwrites a known total
- message parts are replaced wholesale when an upsert carries different parts
- ``searchable_text`` accumulates titles and new message text up to a bound;
  re-delivering a message with the same text parts adds nothing
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .backends.base import (
    BatchResult,
    Message,
    MessageInput,
    MessageWithParts,
    Part,
    Session,
    SessionDetail,
    SessionInput,
    StorageBackend,
)
from .content_extraction import join_text_parts
from .exceptions import (
    ConflictError,
    IngestionError,
    SessionNotFoundError,
    SessionStorageError,
    ValidationError,
)
from .id_utils import new_id, new_public_slug, now_ms
from .identity import optional_owner, require_owner
from .logging_utils import StorageLoggerAdapter

logger = logging.getLogger(__name__)

SEARCHABLE_TEXT_LIMIT = 10_000
DEFAULT_SOURCE = "opencode"

# Session fields copied from the input whenever the plugin sends them
_OPTIONAL_SESSION_FIELDS = (
    "title", "project_path", "project_name", "model", "provider", "duration_ms",
)

# Known totals: only a non-zero incoming value replaces the stored one
_AGGREGATE_SESSION_FIELDS = ("prompt_tokens", "completion_tokens", "cost")

_OPTIONAL_MESSAGE_FIELDS = (
    "text_content", "model", "prompt_tokens", "completion_tokens", "duration_ms",
)


@dataclass
class IngestionConfig:
    """Configuration for the ingestion engine."""

    searchable_text_limit: int = SEARCHABLE_TEXT_LIMIT
    default_source: str = DEFAULT_SOURCE
    source_aliases: dict[str, str] = field(default_factory=lambda: {"cursor": "cursor-sync"})

    @classmethod
    def from_env(cls) -> IngestionConfig:
        """Create config from environment variables."""
        limit_str = os.environ.get(
            "SESSION_SYNC_SEARCHABLE_TEXT_LIMIT", str(SEARCHABLE_TEXT_LIMIT)
        )
        return cls(
            searchable_text_limit=int(limit_str),
            default_source=os.environ.get("SESSION_SYNC_DEFAULT_SOURCE", DEFAULT_SOURCE),
        )

    def normalize_source(self, source: str | None) -> str:
        if not source:
            return self.default_source
        return self.source_aliases.get(source, source)


def append_searchable_text(current: str | None, addition: str, limit: int) -> str:
    """
    Append ``addition`` to the searchable projection, space-joined, keeping
    the first ``limit`` characters.

    Examples:
        >>> append_searchable_text("fix login", "check auth.ts", 100)
        'fix login check auth.ts'
        >>> append_searchable_text(None, "hello", 3)
        'hel'
    """
    joined = " ".join(piece for piece in (current, addition) if piece)
    return joined[:limit]


def _part_payloads(parts: Iterable[Any]) -> list[tuple[str, str]]:
    # Stored content went through JSON, so compare the serialized forms
    return [(p.type, json.dumps(p.content, sort_keys=True, default=str)) for p in parts]


class IngestionEngine:
    """
    Applies plugin upserts and owner-scoped session management.

    Every public write resolves the owner first and fails with
    UnauthenticatedError when there is none. Reads for an anonymous caller
    return empty results instead.
    """

    def __init__(
        self,
        backend: StorageBackend,
        indexer: Any = None,
        config: IngestionConfig | None = None,
    ):
        """
        Args:
            backend: Initialized storage backend
            indexer: Optional IndexingQueue (anything with ``enqueue(session_id)``
                and ``enqueue_message(message_id)``)
            config: Ingestion settings (defaults to IngestionConfig())
        """
        self.backend = backend
        self.indexer = indexer
        self.config = config or IngestionConfig()

    # =========================================================================
    # Session upsert
    # =========================================================================

    async def upsert_session(self, owner_id: str | None, data: SessionInput) -> str:
        """Create or patch a session. Returns the internal session id."""
        owner = require_owner(owner_id, "upsert_session")
        session_id, _ = await self._upsert_session(owner, data)
        self._schedule_indexing(session_id)
        return session_id

    async def _upsert_session(self, owner: str, data: SessionInput) -> tuple[str, str]:
        if not data.external_id or not str(data.external_id).strip():
            raise ValidationError("external_id", "must be a non-empty string")

        log = StorageLoggerAdapter(logger, {"owner_id": owner, "external_id": data.external_id})

        async with self.backend.transaction():
            existing = await self.backend.get_session_by_external_id(owner, data.external_id)
            if existing is None:
                session = self._new_session(owner, data)
                await self.backend.insert_session(session)
                log.debug(f"Created session {session.id}")
                return session.id, "inserted"

            updates = self._merge_session(existing, data)
            if not updates:
                return existing.id, "skipped"

            updates["updated_at"] = now_ms()
            await self.backend.update_session(existing.id, updates)
            log.debug(f"Updated session {existing.id}: {sorted(updates)}")
            return existing.id, "updated"

    def _new_session(self, owner: str, data: SessionInput) -> Session:
        now = now_ms()
        prompt_tokens = data.prompt_tokens or 0
        completion_tokens = data.completion_tokens or 0
        searchable = data.title[: self.config.searchable_text_limit] if data.title else None

        return Session(
            id=new_id(),
            user_id=owner,
            external_id=data.external_id,
            title=data.title,
            project_path=data.project_path,
            project_name=data.project_name,
            model=data.model,
            provider=data.provider,
            source=self.config.normalize_source(data.source),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost=data.cost or 0.0,
            duration_ms=data.duration_ms,
            searchable_text=searchable,
            created_at=data.created_at or now,
            updated_at=now,
        )

    def _merge_session(self, existing: Session, data: SessionInput) -> dict[str, Any]:
        """Compute the column changes an upsert makes to an existing session."""
        updates: dict[str, Any] = {}

        for name in _OPTIONAL_SESSION_FIELDS:
            value = getattr(data, name)
            if value is not None and value != getattr(existing, name):
                updates[name] = value

        for name in _AGGREGATE_SESSION_FIELDS:
            value = getattr(data, name)
            if value and value != getattr(existing, name):
                updates[name] = value

        if data.source is not None:
            source = self.config.normalize_source(data.source)
            if source != existing.source:
                updates["source"] = source

        if "prompt_tokens" in updates or "completion_tokens" in updates:
            updates["total_tokens"] = updates.get(
                "prompt_tokens", existing.prompt_tokens
            ) + updates.get("completion_tokens", existing.completion_tokens)

        # A placeholder created by an early message has no title in its text yet
        if data.title and data.title not in (existing.searchable_text or ""):
            updates["searchable_text"] = append_searchable_text(
                existing.searchable_text, data.title, self.config.searchable_text_limit
            )

        return updates

    # =========================================================================
    # Message upsert
    # =========================================================================

    async def upsert_message(self, owner_id: str | None, data: MessageInput) -> str:
        """Create or patch a message (and its parts). Returns the internal message id."""
        owner = require_owner(owner_id, "upsert_message")
        message_id, session_id, _ = await self._upsert_message(owner, data)
        self._schedule_indexing(session_id)
        self._schedule_message_indexing(message_id)
        return message_id

    async def _upsert_message(self, owner: str, data: MessageInput) -> tuple[str, str, str]:
        if not data.session_external_id or not str(data.session_external_id).strip():
            raise ValidationError("session_external_id", "must be a non-empty string")
        if not data.external_id or not str(data.external_id).strip():
            raise ValidationError("external_id", "must be a non-empty string")

        try:
            return await self._apply_message(owner, data)
        except ConflictError as e:
            # Another writer inserted the same message (or placeholder session)
            # between our lookup and insert; the retry takes the update path.
            logger.info(f"Retrying message upsert {data.external_id} after conflict: {e.key}")
            return await self._apply_message(owner, data)

    async def _apply_message(self, owner: str, data: MessageInput) -> tuple[str, str, str]:
        log = StorageLoggerAdapter(logger, {"owner_id": owner, "external_id": data.external_id})
        limit = self.config.searchable_text_limit

        async with self.backend.transaction():
            session = await self._resolve_session(owner, data)
            existing = await self.backend.get_message_by_external_id(data.external_id)

            if existing is None:
                message = Message(
                    id=new_id(),
                    session_id=session.id,
                    external_id=data.external_id,
                    role=data.role,
                    text_content=data.text_content,
                    model=data.model,
                    prompt_tokens=data.prompt_tokens,
                    completion_tokens=data.completion_tokens,
                    duration_ms=data.duration_ms,
                    created_at=data.created_at or now_ms(),
                )
                await self.backend.insert_message(message)
                action = "inserted"

                prompt = data.prompt_tokens or 0
                completion = data.completion_tokens or 0
                session_updates: dict[str, Any] = {
                    "prompt_tokens": session.prompt_tokens + prompt,
                    "completion_tokens": session.completion_tokens + completion,
                    "total_tokens": session.total_tokens + prompt + completion,
                    "message_count": session.message_count + 1,
                }
            else:
                if existing.session_id != session.id:
                    # Messages never move; patch within the session they belong to
                    owning = await self.backend.get_session(existing.session_id)
                    if owning is None or owning.user_id != owner:
                        raise IngestionError(
                            "Message external id is already used by another owner",
                            external_id=data.external_id,
                        )
                    session = owning

                message = existing
                patch = {
                    name: getattr(data, name)
                    for name in _OPTIONAL_MESSAGE_FIELDS
                    if getattr(data, name) is not None
                    and getattr(data, name) != getattr(existing, name)
                }
                if patch:
                    await self.backend.update_message(existing.id, patch)
                action = "updated" if patch else "skipped"
                session_updates = {}

            if data.parts is not None:
                stored: list[Part] = []
                if existing is not None:
                    stored = (await self.backend.list_parts([message.id])).get(message.id, [])

                if existing is None or _part_payloads(stored) != _part_payloads(data.parts):
                    await self.backend.replace_parts(message.id, data.parts)
                    if existing is not None:
                        action = "updated"

                # A re-delivery with the same text must not grow the projection again
                text = join_text_parts(data.parts)
                if text and (existing is None or join_text_parts(stored) != text):
                    searchable = append_searchable_text(session.searchable_text, text, limit)
                    if searchable != session.searchable_text:
                        session_updates["searchable_text"] = searchable

            if session_updates or action != "skipped":
                session_updates["updated_at"] = now_ms()
                await self.backend.update_session(session.id, session_updates)

        log.debug(f"Message {message.id} {action} in session {session.id}")
        return message.id, session.id, action

    async def _resolve_session(self, owner: str, data: MessageInput) -> Session:
        session = await self.backend.get_session_by_external_id(owner, data.session_external_id)
        if session is not None:
            return session

        now = now_ms()
        placeholder = Session(
            id=new_id(),
            user_id=owner,
            external_id=data.session_external_id,
            model=data.model,
            source=self.config.normalize_source(data.source),
            created_at=now,
            updated_at=now,
        )
        await self.backend.insert_session(placeholder)

        session = await self.backend.get_session_by_external_id(owner, data.session_external_id)
        if session is None:
            raise IngestionError(
                "Placeholder session could not be read back",
                external_id=data.session_external_id,
            )
        logger.debug(f"Auto-created session {session.id} for message {data.external_id}")
        return session

    # =========================================================================
    # Batches
    # =========================================================================

    async def batch_upsert_sessions(
        self, owner_id: str | None, sessions: Iterable[SessionInput]
    ) -> BatchResult:
        """Apply each session upsert independently, collecting per-item errors."""
        owner = require_owner(owner_id, "batch_upsert_sessions")
        result = BatchResult()
        touched: list[str] = []

        for item in sessions:
            try:
                session_id, action = await self._upsert_session(owner, item)
            except SessionStorageError as e:
                logger.warning(f"Session {item.external_id!r} failed in batch: {e}")
                result.errors.append(f"{item.external_id}: {e.message}")
                continue
            setattr(result, action, getattr(result, action) + 1)
            touched.append(session_id)

        for session_id in dict.fromkeys(touched):
            self._schedule_indexing(session_id)
        return result

    async def batch_upsert_messages(
        self, owner_id: str | None, messages: Iterable[MessageInput]
    ) -> BatchResult:
        """Apply each message upsert independently, collecting per-item errors."""
        owner = require_owner(owner_id, "batch_upsert_messages")
        result = BatchResult()
        touched: list[str] = []
        touched_messages: list[str] = []

        for item in messages:
            try:
                message_id, session_id, action = await self._upsert_message(owner, item)
            except SessionStorageError as e:
                logger.warning(f"Message {item.external_id!r} failed in batch: {e}")
                result.errors.append(f"{item.external_id}: {e.message}")
                continue
            setattr(result, action, getattr(result, action) + 1)
            touched.append(session_id)
            touched_messages.append(message_id)

        for session_id in dict.fromkeys(touched):
            self._schedule_indexing(session_id)
        for message_id in dict.fromkeys(touched_messages):
            self._schedule_message_indexing(message_id)
        return result

    def _schedule_indexing(self, session_id: str) -> None:
        if self.indexer is None:
            return
        try:
            self.indexer.enqueue(session_id)
        except RuntimeError as e:
            # Queue stopped or no running loop; the upsert itself already committed
            logger.warning(f"Could not schedule indexing for session {session_id}: {e}")

    def _schedule_message_indexing(self, message_id: str) -> None:
        if self.indexer is None:
            return
        try:
            self.indexer.enqueue_message(message_id)
        except RuntimeError as e:
            logger.warning(f"Could not schedule indexing for message {message_id}: {e}")

    # =========================================================================
    # Session management
    # =========================================================================

    async def _owned_session(self, owner: str, session_id: str) -> Session:
        session = await self.backend.get_session(session_id)
        if session is None or session.user_id != owner:
            raise SessionNotFoundError(session_id, owner)
        return session

    async def _load_detail(self, session: Session) -> SessionDetail:
        messages = await self.backend.list_messages(session.id)
        parts = await self.backend.list_parts([m.id for m in messages])
        return SessionDetail(
            session=session,
            messages=[MessageWithParts(message=m, parts=parts.get(m.id, [])) for m in messages],
        )

    async def get_session(self, owner_id: str | None, session_id: str) -> SessionDetail | None:
        """A session with ordered messages and parts, or None if not the caller's."""
        owner = optional_owner(owner_id)
        if owner is None:
            return None
        session = await self.backend.get_session(session_id)
        if session is None or session.user_id != owner:
            return None
        return await self._load_detail(session)

    async def list_sessions(
        self, owner_id: str | None, limit: int = 50, offset: int = 0
    ) -> list[Session]:
        owner = optional_owner(owner_id)
        if owner is None:
            return []
        return await self.backend.list_sessions(owner, limit=limit, offset=offset)

    async def delete_session(self, owner_id: str | None, session_id: str) -> bool:
        """Delete a session with its messages, parts and embedding.

        Returns False when the session does not exist or belongs to someone else.
        """
        owner = require_owner(owner_id, "delete_session")
        async with self.backend.transaction():
            session = await self.backend.get_session(session_id)
            if session is None or session.user_id != owner:
                return False
            await self.backend.delete_session_cascade(session_id)

        logger.info(f"Deleted session {session_id}", extra={"owner_id": owner})
        return True

    async def set_visibility(
        self, owner_id: str | None, session_id: str, is_public: bool
    ) -> tuple[bool, str | None]:
        """Publish or unpublish a session. The slug is generated once and kept."""
        owner = require_owner(owner_id, "set_visibility")
        async with self.backend.transaction():
            session = await self._owned_session(owner, session_id)
            slug = session.public_slug
            if is_public and slug is None:
                slug = new_public_slug()
            await self.backend.update_session(
                session_id, {"is_public": is_public, "public_slug": slug, "updated_at": now_ms()}
            )
        return is_public, slug

    async def get_public_session(self, public_slug: str) -> SessionDetail | None:
        """Anonymous read of a published session, without owner or searchable text."""
        session = await self.backend.get_session_by_slug(public_slug)
        if session is None or not session.is_public:
            return None
        redacted = dataclasses.replace(session, user_id="", searchable_text=None)
        return await self._load_detail(redacted)

    # =========================================================================
    # Evaluation metadata
    # =========================================================================

    async def set_eval_ready(self, owner_id: str | None, session_id: str, ready: bool) -> None:
        owner = require_owner(owner_id, "set_eval_ready")
        async with self.backend.transaction():
            await self._owned_session(owner, session_id)
            now = now_ms()
            await self.backend.update_session(
                session_id,
                {"eval_ready": ready, "reviewed_at": now if ready else None, "updated_at": now},
            )

    async def update_eval_notes(
        self, owner_id: str | None, session_id: str, notes: str | None
    ) -> None:
        owner = require_owner(owner_id, "update_eval_notes")
        async with self.backend.transaction():
            await self._owned_session(owner, session_id)
            await self.backend.update_session(
                session_id, {"eval_notes": notes or None, "updated_at": now_ms()}
            )

    async def update_eval_tags(
        self, owner_id: str | None, session_id: str, tags: Iterable[str]
    ) -> list[str]:
        """Replace a session's eval tags (trimmed, de-duplicated, order kept)."""
        owner = require_owner(owner_id, "update_eval_tags")
        cleaned = list(dict.fromkeys(t.strip() for t in tags if t and t.strip()))
        async with self.backend.transaction():
            await self._owned_session(owner, session_id)
            await self.backend.update_session(
                session_id, {"eval_tags": cleaned, "updated_at": now_ms()}
            )
        return cleaned

    async def list_eval_sessions(self, owner_id: str | None, limit: int = 100) -> list[Session]:
        owner = optional_owner(owner_id)
        if owner is None:
            return []
        return await self.backend.list_sessions(owner, limit=limit, eval_ready=True)
