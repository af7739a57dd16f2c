"""
Session and message embedding indexer.

Keeps one embedding per session, computed from the session title and the
text of its messages, plus one embedding per message for message-level
semantic search. Re-indexing is idempotent: the text is hashed and a
target whose text has not changed since the last embedding is skipped, so
retries never produce duplicate or needless vectors.

Indexing runs off the ingestion path through ``IndexingQueue``, an asyncio
queue with at-least-once retries.
"""

from __future__ import annotations

import asyncio
import contextvars
import hashlib
import logging
from collections.abc import Iterable, Mapping
from enum import Enum

from ..backends.base import (
    EmbeddingRecord,
    Message,
    MessageEmbeddingRecord,
    Part,
    StorageBackend,
)
from ..content_extraction import EMBED_TOKEN_LIMIT, join_text_parts, truncate_to_tokens
from ..id_utils import new_id, now_ms
from .base import EmbeddingProvider

logger = logging.getLogger(__name__)


class IndexOutcome(str, Enum):
    INDEXED = "indexed"
    SKIPPED_EMPTY = "skipped_empty"
    UNCHANGED = "unchanged"
    MISSING = "missing"


class IndexTarget(str, Enum):
    SESSION = "session"
    MESSAGE = "message"


def message_text(message: Message, parts: Iterable[Part]) -> str:
    """A message's text content, or its text parts (part order) when it has none."""
    if message.text_content and message.text_content.strip():
        return message.text_content
    return join_text_parts(sorted(parts, key=lambda p: p.order))


def compose_embedding_text(
    title: str | None,
    messages: Iterable[Message],
    parts_by_message: Mapping[str, list[Part]],
) -> str:
    """
    Build the text embedded for a session.

    The title, a blank line, then each non-empty message text (creation
    order) separated by blank lines. Within one message, text parts are
    joined with ``PART_SEPARATOR`` (a single space), the same join the
    searchable-text projection uses. Returns "" when there is nothing to
    embed.
    """
    texts = [message_text(m, parts_by_message.get(m.id, [])) for m in messages]
    body = "\n\n".join(t for t in texts if t.strip())
    return f"{title or ''}\n\n{body}".strip()


def content_hash(text: str, model_name: str) -> str:
    return hashlib.sha256(f"{model_name}\x00{text}".encode()).hexdigest()


class EmbeddingIndexer:
    """Computes and stores the embedding of one session or message at a time."""

    def __init__(
        self,
        backend: StorageBackend,
        embedding_provider: EmbeddingProvider,
        max_tokens: int = EMBED_TOKEN_LIMIT,
    ):
        self.backend = backend
        self.embedding_provider = embedding_provider
        self.max_tokens = max_tokens

    async def build_embedding_text(self, session_id: str) -> str | None:
        """The session's embedding text, or None if the session no longer exists."""
        session = await self.backend.get_session(session_id)
        if session is None:
            return None
        messages = await self.backend.list_messages(session_id)
        parts = await self.backend.list_parts([m.id for m in messages])
        return compose_embedding_text(session.title, messages, parts)

    async def index_session(self, session_id: str) -> IndexOutcome:
        """Embed a session's current text and store it as its embedding."""
        session = await self.backend.get_session(session_id)
        if session is None:
            logger.debug(f"Session {session_id} vanished before indexing")
            return IndexOutcome.MISSING

        text = await self.build_embedding_text(session_id)
        if not text:
            return IndexOutcome.SKIPPED_EMPTY

        text = truncate_to_tokens(text, self.max_tokens)
        model = self.embedding_provider.model_name
        digest = content_hash(text, model)

        existing = await self.backend.get_embedding(session_id)
        if existing is not None and existing.text_hash == digest:
            return IndexOutcome.UNCHANGED

        vector = await self.embedding_provider.embed_text(text)
        await self.backend.upsert_embedding(
            EmbeddingRecord(
                id=existing.id if existing else new_id(),
                session_id=session_id,
                user_id=session.user_id,
                embedding=vector,
                text_hash=digest,
                embedding_model=model,
                created_at=now_ms(),
            )
        )
        logger.info(f"Indexed session {session_id} ({len(text)} chars, model={model})")
        return IndexOutcome.INDEXED

    async def index_message(self, message_id: str) -> IndexOutcome:
        """Embed one message's text and store it under the owning session's user."""
        message = await self.backend.get_message(message_id)
        session = await self.backend.get_session(message.session_id) if message else None
        if message is None or session is None:
            logger.debug(f"Message {message_id} vanished before indexing")
            return IndexOutcome.MISSING

        parts = (await self.backend.list_parts([message_id])).get(message_id, [])
        text = message_text(message, parts).strip()
        if not text:
            return IndexOutcome.SKIPPED_EMPTY

        text = truncate_to_tokens(text, self.max_tokens)
        model = self.embedding_provider.model_name
        digest = content_hash(text, model)

        existing = await self.backend.get_message_embedding(message_id)
        if existing is not None and existing.text_hash == digest:
            return IndexOutcome.UNCHANGED

        vector = await self.embedding_provider.embed_text(text)
        await self.backend.upsert_message_embedding(
            MessageEmbeddingRecord(
                id=existing.id if existing else new_id(),
                message_id=message_id,
                session_id=session.id,
                user_id=session.user_id,
                embedding=vector,
                text_hash=digest,
                embedding_model=model,
                created_at=now_ms(),
            )
        )
        logger.debug(f"Indexed message {message_id} of session {session.id}")
        return IndexOutcome.INDEXED


class IndexingQueue:
    """
    Background indexing with at-least-once delivery.

    ``enqueue`` and ``enqueue_message`` never block and never raise for
    indexing failures; a target already waiting in the queue is not queued
    twice. Failed jobs are re-queued until ``max_attempts`` is reached, then
    logged, dropped and their ids recorded in ``failed``. Workers start
    lazily on the first enqueue.
    """

    def __init__(
        self,
        indexer: EmbeddingIndexer,
        workers: int = 1,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.indexer = indexer
        self.workers = workers
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        self._queue: asyncio.Queue[tuple[IndexTarget, str, int]] = asyncio.Queue()
        self._pending: set[tuple[IndexTarget, str]] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopped = False
        self.failed: list[str] = []

    def start(self) -> None:
        if self._tasks or self._stopped:
            return
        for i in range(self.workers):
            # Fresh context: workers must not inherit a caller's transaction state
            task = asyncio.create_task(
                self._worker(), name=f"session-indexer-{i}", context=contextvars.Context()
            )
            self._tasks.append(task)

    def enqueue(self, session_id: str) -> bool:
        """Schedule a session for indexing. Returns False if it was already pending.

        Raises:
            RuntimeError: If the queue was stopped, or there is no running loop
        """
        return self._put(IndexTarget.SESSION, session_id)

    def enqueue_message(self, message_id: str) -> bool:
        """Schedule a single message for indexing. Same contract as ``enqueue``."""
        return self._put(IndexTarget.MESSAGE, message_id)

    def _put(self, target: IndexTarget, target_id: str) -> bool:
        if self._stopped:
            raise RuntimeError("Indexing queue is stopped")
        self.start()
        if (target, target_id) in self._pending:
            return False
        self._pending.add((target, target_id))
        self._queue.put_nowait((target, target_id, 1))
        return True

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every queued job (including retries) has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are dropped."""
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _worker(self) -> None:
        while True:
            target, target_id, attempt = await self._queue.get()
            try:
                # Allow a new enqueue while this job runs; its text may already be stale
                self._pending.discard((target, target_id))
                await self._run(target, target_id, attempt)
            finally:
                self._queue.task_done()

    async def _run(self, target: IndexTarget, target_id: str, attempt: int) -> None:
        try:
            if target is IndexTarget.MESSAGE:
                outcome = await self.indexer.index_message(target_id)
            else:
                outcome = await self.indexer.index_session(target_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= self.max_attempts:
                logger.error(
                    f"Indexing {target.value} {target_id} failed after {attempt} attempts: {e}",
                    exc_info=True,
                )
                self.failed.append(target_id)
                return

            logger.warning(f"Indexing {target.value} {target_id} failed (attempt {attempt}): {e}")
            await asyncio.sleep(self.retry_delay)
            if (target, target_id) not in self._pending:
                self._pending.add((target, target_id))
                self._queue.put_nowait((target, target_id, attempt + 1))
            return

        logger.debug(f"Indexing {target.value} {target_id}: {outcome.value}")
