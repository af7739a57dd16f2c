"""
SQLite storage backend with full-text and vector search.

Uses FTS5 virtual tables for lexical matching and brute-force numpy cosine
similarity for embeddings. Ideal for single-node deployments, embedded
applications, and testing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np

from ..exceptions import ConflictError, StorageConnectionError, StorageIOError
from ..id_utils import new_id
from .base import (
    EmbeddingRecord,
    Message,
    MessageEmbeddingRecord,
    MessageHit,
    MessageRole,
    MessageVectorHit,
    Part,
    PartInput,
    Session,
    StorageBackend,
    VectorHit,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# SQLite's default host-parameter limit is 999
_IN_CLAUSE_CHUNK = 500

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


# =============================================================================
# Column Definitions
# =============================================================================

SESSION_COLUMNS = (
    "id",
    "user_id",
    "external_id",
    "title",
    "project_path",
    "project_name",
    "model",
    "provider",
    "source",
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "cost",
    "duration_ms",
    "is_public",
    "public_slug",
    "searchable_text",
    "summary",
    "message_count",
    "eval_ready",
    "eval_tags",
    "eval_notes",
    "reviewed_at",
    "created_at",
    "updated_at",
)

MESSAGE_COLUMNS = (
    "id",
    "session_id",
    "external_id",
    "role",
    "text_content",
    "model",
    "prompt_tokens",
    "completion_tokens",
    "duration_ms",
    "created_at",
)

# Columns a caller may patch; ids, owner and external keys are immutable
SESSION_UPDATABLE = frozenset(SESSION_COLUMNS) - {"id", "user_id", "external_id"}
MESSAGE_UPDATABLE = frozenset(MESSAGE_COLUMNS) - {"id", "session_id", "external_id", "role"}

_SESSION_SELECT = ", ".join(f"s.{c}" for c in SESSION_COLUMNS)
_MESSAGE_SELECT = ", ".join(f"m.{c}" for c in MESSAGE_COLUMNS)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT NOT NULL PRIMARY KEY,
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    title TEXT,
    project_path TEXT,
    project_name TEXT,
    model TEXT,
    provider TEXT,
    source TEXT,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    duration_ms INTEGER,
    is_public INTEGER NOT NULL DEFAULT 0,
    public_slug TEXT UNIQUE,
    searchable_text TEXT,
    summary TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    eval_ready INTEGER NOT NULL DEFAULT 0,
    eval_tags TEXT,
    eval_notes TEXT,
    reviewed_at INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE (user_id, external_id),
    CHECK (total_tokens = prompt_tokens + completion_tokens)
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    external_id TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL,
    text_content TEXT,
    model TEXT,
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    duration_ms INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS parts (
    id TEXT NOT NULL PRIMARY KEY,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    content_json TEXT,
    part_order INTEGER NOT NULL,
    UNIQUE (message_id, part_order)
);

CREATE TABLE IF NOT EXISTS session_embeddings (
    id TEXT NOT NULL PRIMARY KEY,
    session_id TEXT NOT NULL UNIQUE REFERENCES sessions(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    embedding_json TEXT NOT NULL,
    text_hash TEXT NOT NULL,
    embedding_model TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS message_embeddings (
    id TEXT NOT NULL PRIMARY KEY,
    message_id TEXT NOT NULL UNIQUE REFERENCES messages(id) ON DELETE CASCADE,
    session_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    embedding_json TEXT NOT NULL,
    text_hash TEXT NOT NULL,
    embedding_model TEXT,
    created_at INTEGER NOT NULL
);

CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
    searchable_text,
    session_id UNINDEXED,
    tokenize = 'unicode61'
);

CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    text_content,
    message_id UNINDEXED,
    tokenize = 'unicode61'
);

CREATE INDEX IF NOT EXISTS idx_sessions_user_updated ON sessions (user_id, updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, created_at);
CREATE INDEX IF NOT EXISTS idx_embeddings_user ON session_embeddings (user_id);
CREATE INDEX IF NOT EXISTS idx_message_embeddings_user
    ON message_embeddings (user_id, session_id);
"""


def build_match_query(query: str) -> str | None:
    """
    Turn free-form user input into a safe FTS5 MATCH expression.

    Every word becomes a quoted term and terms are OR-ed so that bm25 ranks
    documents matching more of them higher. The last term is a prefix match
    to support search-as-you-type. Returns None when the input has no words.

    Examples:
        >>> build_match_query("fix login")
        '"fix" OR "login"*'
        >>> build_match_query("  ?! ") is None
        True
    """
    tokens = _TOKEN_RE.findall(query.lower())
    if not tokens:
        return None
    terms = [f'"{token}"' for token in tokens]
    terms[-1] += "*"
    return " OR ".join(terms)


@dataclass
class SQLiteConfig:
    """Configuration for SQLite storage."""

    db_path: str | Path = ":memory:"
    vector_dimensions: int = 1536  # text-embedding-3-small

    @classmethod
    def from_env(cls) -> SQLiteConfig:
        """Create config from environment variables."""
        db_path = os.environ.get("SESSION_SYNC_SQLITE_PATH", ":memory:")
        dimensions_str = os.environ.get("SESSION_SYNC_VECTOR_DIMENSIONS", "1536")

        return cls(
            db_path=db_path,
            vector_dimensions=int(dimensions_str),
        )


class SQLiteBackend(StorageBackend):
    """
    SQLite storage backend.

    Features:
    - Single file (or in-memory) database
    - FTS5 full-text search ranked by bm25
    - numpy cosine similarity over owner-filtered embeddings
    - Serialized ``BEGIN IMMEDIATE`` transactions on one shared connection
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._write_lock = asyncio.Lock()
        # Tracks whether the current task already holds the transaction
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"sqlite_tx_{id(self)}", default=False
        )

    @classmethod
    async def create(cls, config: SQLiteConfig | None = None) -> SQLiteBackend:
        """Create and initialize SQLite backend."""
        if config is None:
            config = SQLiteConfig.from_env()

        backend = cls(config)
        await backend.initialize()
        return backend

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            # Autocommit mode: transactions are opened explicitly
            self.conn = await aiosqlite.connect(str(self.config.db_path), isolation_level=None)
            self.conn.row_factory = aiosqlite.Row

            await self.conn.execute("PRAGMA foreign_keys = ON")
            if str(self.config.db_path) != ":memory:":
                await self.conn.execute("PRAGMA journal_mode = WAL")

            await self.conn.executescript(_CREATE_TABLES_SQL)
            await self._create_schema_meta_table()

            schema_version = await self._get_schema_version()
            if schema_version < SCHEMA_VERSION:
                await self._set_schema_version(SCHEMA_VERSION)

            self._initialized = True
            logger.info(f"SQLite backend initialized: {self.config.db_path}")

        except Exception as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise StorageConnectionError(str(self.config.db_path), e) from e

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None

        self._initialized = False

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(operation, cause=RuntimeError("Not initialized"))
        return self.conn

    # =========================================================================
    # Schema Management
    # =========================================================================

    async def _create_schema_meta_table(self) -> None:
        """Create schema_meta table for version tracking."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

    async def _get_schema_version(self) -> int:
        """Get the current schema version (0 for a fresh database)."""
        async with self.conn.execute(
            "SELECT value FROM schema_meta WHERE key = 'version'"
        ) as cursor:
            result = await cursor.fetchone()
            return int(result[0]) if result else 0

    async def _set_schema_version(self, version: int) -> None:
        await self.conn.execute(
            """
            INSERT INTO schema_meta (key, value) VALUES ('version', ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            (str(version),),
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Run the enclosed operations as one atomic unit.

        Re-entrant within a task: nested use joins the outer transaction.
        Other tasks wait on the write lock until COMMIT or ROLLBACK.
        """
        conn = self._require_conn("transaction")
        if self._in_transaction.get():
            yield
            return

        async with self._write_lock:
            token = self._in_transaction.set(True)
            try:
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield
                except BaseException:
                    await conn.execute("ROLLBACK")
                    raise
                await conn.execute("COMMIT")
            finally:
                self._in_transaction.reset(token)

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _row_to_session(row: Any) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            external_id=row["external_id"],
            title=row["title"],
            project_path=row["project_path"],
            project_name=row["project_name"],
            model=row["model"],
            provider=row["provider"],
            source=row["source"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            total_tokens=row["total_tokens"],
            cost=row["cost"],
            duration_ms=row["duration_ms"],
            is_public=bool(row["is_public"]),
            public_slug=row["public_slug"],
            searchable_text=row["searchable_text"],
            summary=row["summary"],
            message_count=row["message_count"],
            eval_ready=bool(row["eval_ready"]),
            eval_tags=json.loads(row["eval_tags"]) if row["eval_tags"] else [],
            eval_notes=row["eval_notes"],
            reviewed_at=row["reviewed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_message(row: Any) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            external_id=row["external_id"],
            role=MessageRole.coerce(row["role"]),
            text_content=row["text_content"],
            model=row["model"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            duration_ms=row["duration_ms"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_value(column: str, value: Any) -> Any:
        if column == "eval_tags":
            return json.dumps(list(value or []))
        if column in ("is_public", "eval_ready"):
            return int(bool(value))
        return value

    # =========================================================================
    # Session Operations
    # =========================================================================

    async def _fetch_session(self, where: str, params: tuple[Any, ...]) -> Session | None:
        conn = self._require_conn("get_session")
        async with conn.execute(
            f"SELECT {_SESSION_SELECT} FROM sessions s WHERE {where}", params
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    async def get_session(self, session_id: str) -> Session | None:
        return await self._fetch_session("s.id = ?", (session_id,))

    async def get_session_by_external_id(self, user_id: str, external_id: str) -> Session | None:
        return await self._fetch_session(
            "s.user_id = ? AND s.external_id = ?", (user_id, external_id)
        )

    async def get_session_by_slug(self, public_slug: str) -> Session | None:
        return await self._fetch_session("s.public_slug = ?", (public_slug,))

    async def get_sessions_by_ids(self, user_id: str, session_ids: list[str]) -> list[Session]:
        conn = self._require_conn("get_sessions_by_ids")
        found: dict[str, Session] = {}
        for start in range(0, len(session_ids), _IN_CLAUSE_CHUNK):
            chunk = session_ids[start : start + _IN_CLAUSE_CHUNK]
            placeholders = ", ".join(["?"] * len(chunk))
            async with conn.execute(
                f"SELECT {_SESSION_SELECT} FROM sessions s "
                f"WHERE s.user_id = ? AND s.id IN ({placeholders})",
                (user_id, *chunk),
            ) as cursor:
                for row in await cursor.fetchall():
                    found[row["id"]] = self._row_to_session(row)

        return [found[sid] for sid in session_ids if sid in found]

    async def insert_session(self, session: Session) -> None:
        conn = self._require_conn("insert_session")
        placeholders = ", ".join(["?"] * len(SESSION_COLUMNS))
        values = tuple(self._session_value(c, getattr(session, c)) for c in SESSION_COLUMNS)

        async with self.transaction():
            try:
                await conn.execute(
                    f"INSERT INTO sessions ({', '.join(SESSION_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(
                    "sessions", f"{session.user_id}/{session.external_id}", e
                ) from e
            await self._refresh_session_fts(session.id, session.searchable_text)

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        conn = self._require_conn("update_session")
        unknown = set(fields) - SESSION_UPDATABLE
        if unknown:
            raise StorageIOError(
                "update_session", cause=ValueError(f"Columns not updatable: {sorted(unknown)}")
            )
        if not fields:
            return

        columns = list(fields)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        values = [self._session_value(c, fields[c]) for c in columns]

        async with self.transaction():
            try:
                await conn.execute(
                    f"UPDATE sessions SET {assignments} WHERE id = ?", (*values, session_id)
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("sessions", session_id, e) from e
            if "searchable_text" in fields:
                await self._refresh_session_fts(session_id, fields["searchable_text"])

    async def _refresh_session_fts(self, session_id: str, text: str | None) -> None:
        await self.conn.execute("DELETE FROM sessions_fts WHERE session_id = ?", (session_id,))
        if text:
            await self.conn.execute(
                "INSERT INTO sessions_fts (searchable_text, session_id) VALUES (?, ?)",
                (text, session_id),
            )

    async def list_sessions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        eval_ready: bool | None = None,
    ) -> list[Session]:
        conn = self._require_conn("list_sessions")

        where_parts = ["s.user_id = ?"]
        params: list[Any] = [user_id]
        if eval_ready is not None:
            where_parts.append("s.eval_ready = ?")
            params.append(int(eval_ready))

        query = f"""
            SELECT {_SESSION_SELECT}
            FROM sessions s
            WHERE {" AND ".join(where_parts)}
            ORDER BY s.updated_at DESC, s.rowid DESC
            LIMIT ? OFFSET ?
        """
        params.extend([limit, offset])

        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def delete_session_cascade(self, session_id: str) -> None:
        conn = self._require_conn("delete_session")

        async with self.transaction():
            await conn.execute(
                """
                DELETE FROM messages_fts WHERE message_id IN (
                    SELECT id FROM messages WHERE session_id = ?
                )
                """,
                (session_id,),
            )
            await conn.execute("DELETE FROM sessions_fts WHERE session_id = ?", (session_id,))
            await conn.execute(
                "DELETE FROM session_embeddings WHERE session_id = ?", (session_id,)
            )
            await conn.execute(
                "DELETE FROM message_embeddings WHERE session_id = ?", (session_id,)
            )
            await conn.execute(
                "DELETE FROM parts WHERE message_id IN "
                "(SELECT id FROM messages WHERE session_id = ?)",
                (session_id,),
            )
            await conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

        logger.debug(f"Deleted session {session_id} with messages, parts and embeddings")

    # =========================================================================
    # Message and Part Operations
    # =========================================================================

    async def _fetch_message(self, where: str, params: tuple[Any, ...]) -> Message | None:
        conn = self._require_conn("get_message")
        async with conn.execute(
            f"SELECT {_MESSAGE_SELECT} FROM messages m WHERE {where}", params
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def get_message(self, message_id: str) -> Message | None:
        return await self._fetch_message("m.id = ?", (message_id,))

    async def get_message_by_external_id(self, external_id: str) -> Message | None:
        return await self._fetch_message("m.external_id = ?", (external_id,))

    async def insert_message(self, message: Message) -> None:
        conn = self._require_conn("insert_message")
        placeholders = ", ".join(["?"] * len(MESSAGE_COLUMNS))
        values = tuple(getattr(message, c) for c in MESSAGE_COLUMNS)
        values = tuple(v.value if isinstance(v, MessageRole) else v for v in values)

        async with self.transaction():
            try:
                await conn.execute(
                    f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("messages", message.external_id, e) from e
            await self._refresh_message_fts(message.id, message.text_content)

    async def update_message(self, message_id: str, fields: dict[str, Any]) -> None:
        conn = self._require_conn("update_message")
        unknown = set(fields) - MESSAGE_UPDATABLE
        if unknown:
            raise StorageIOError(
                "update_message", cause=ValueError(f"Columns not updatable: {sorted(unknown)}")
            )
        if not fields:
            return

        columns = list(fields)
        assignments = ", ".join(f"{c} = ?" for c in columns)

        async with self.transaction():
            await conn.execute(
                f"UPDATE messages SET {assignments} WHERE id = ?",
                (*[fields[c] for c in columns], message_id),
            )
            if "text_content" in fields:
                await self._refresh_message_fts(message_id, fields["text_content"])

    async def _refresh_message_fts(self, message_id: str, text: str | None) -> None:
        await self.conn.execute("DELETE FROM messages_fts WHERE message_id = ?", (message_id,))
        if text:
            await self.conn.execute(
                "INSERT INTO messages_fts (text_content, message_id) VALUES (?, ?)",
                (text, message_id),
            )

    async def list_messages(self, session_id: str) -> list[Message]:
        conn = self._require_conn("list_messages")
        async with conn.execute(
            f"""
            SELECT {_MESSAGE_SELECT}
            FROM messages m
            WHERE m.session_id = ?
            ORDER BY m.created_at ASC, m.rowid ASC
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def replace_parts(self, message_id: str, parts: list[PartInput]) -> list[Part]:
        conn = self._require_conn("replace_parts")
        stored = [
            Part(id=new_id(), message_id=message_id, type=p.type, content=p.content, order=i)
            for i, p in enumerate(parts)
        ]

        async with self.transaction():
            await conn.execute("DELETE FROM parts WHERE message_id = ?", (message_id,))
            if stored:
                await conn.executemany(
                    """
                    INSERT INTO parts (id, message_id, type, content_json, part_order)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (p.id, p.message_id, p.type, json.dumps(p.content, default=str), p.order)
                        for p in stored
                    ],
                )
        return stored

    async def list_parts(self, message_ids: list[str]) -> dict[str, list[Part]]:
        conn = self._require_conn("list_parts")
        grouped: dict[str, list[Part]] = {mid: [] for mid in message_ids}

        for start in range(0, len(message_ids), _IN_CLAUSE_CHUNK):
            chunk = message_ids[start : start + _IN_CLAUSE_CHUNK]
            placeholders = ", ".join(["?"] * len(chunk))
            async with conn.execute(
                f"""
                SELECT id, message_id, type, content_json, part_order
                FROM parts
                WHERE message_id IN ({placeholders})
                ORDER BY message_id, part_order
                """,
                chunk,
            ) as cursor:
                for row in await cursor.fetchall():
                    raw = row["content_json"]
                    grouped[row["message_id"]].append(
                        Part(
                            id=row["id"],
                            message_id=row["message_id"],
                            type=row["type"],
                            content=json.loads(raw) if raw else None,
                            order=row["part_order"],
                        )
                    )
        return grouped

    # =========================================================================
    # Embedding Operations
    # =========================================================================

    async def get_embedding(self, session_id: str) -> EmbeddingRecord | None:
        conn = self._require_conn("get_embedding")
        async with conn.execute(
            """
            SELECT id, session_id, user_id, embedding_json, text_hash, embedding_model, created_at
            FROM session_embeddings
            WHERE session_id = ?
            """,
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return EmbeddingRecord(
            id=row["id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            embedding=json.loads(row["embedding_json"]),
            text_hash=row["text_hash"],
            embedding_model=row["embedding_model"],
            created_at=row["created_at"],
        )

    async def upsert_embedding(self, record: EmbeddingRecord) -> None:
        conn = self._require_conn("upsert_embedding")
        if len(record.embedding) != self.config.vector_dimensions:
            logger.warning(
                f"Embedding for session {record.session_id} has {len(record.embedding)} "
                f"dimensions, expected {self.config.vector_dimensions}"
            )

        async with self.transaction():
            await conn.execute(
                """
                INSERT INTO session_embeddings (
                    id, session_id, user_id, embedding_json, text_hash,
                    embedding_model, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (session_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    embedding_json = excluded.embedding_json,
                    text_hash = excluded.text_hash,
                    embedding_model = excluded.embedding_model,
                    created_at = excluded.created_at
                """,
                (
                    record.id,
                    record.session_id,
                    record.user_id,
                    json.dumps(record.embedding),
                    record.text_hash,
                    record.embedding_model,
                    record.created_at,
                ),
            )

    async def get_message_embedding(self, message_id: str) -> MessageEmbeddingRecord | None:
        conn = self._require_conn("get_message_embedding")
        async with conn.execute(
            """
            SELECT id, message_id, session_id, user_id, embedding_json, text_hash,
                   embedding_model, created_at
            FROM message_embeddings
            WHERE message_id = ?
            """,
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return MessageEmbeddingRecord(
            id=row["id"],
            message_id=row["message_id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            embedding=json.loads(row["embedding_json"]),
            text_hash=row["text_hash"],
            embedding_model=row["embedding_model"],
            created_at=row["created_at"],
        )

    async def upsert_message_embedding(self, record: MessageEmbeddingRecord) -> None:
        conn = self._require_conn("upsert_message_embedding")
        if len(record.embedding) != self.config.vector_dimensions:
            logger.warning(
                f"Embedding for message {record.message_id} has {len(record.embedding)} "
                f"dimensions, expected {self.config.vector_dimensions}"
            )

        async with self.transaction():
            await conn.execute(
                """
                INSERT INTO message_embeddings (
                    id, message_id, session_id, user_id, embedding_json, text_hash,
                    embedding_model, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (message_id) DO UPDATE SET
                    session_id = excluded.session_id,
                    user_id = excluded.user_id,
                    embedding_json = excluded.embedding_json,
                    text_hash = excluded.text_hash,
                    embedding_model = excluded.embedding_model,
                    created_at = excluded.created_at
                """,
                (
                    record.id,
                    record.message_id,
                    record.session_id,
                    record.user_id,
                    json.dumps(record.embedding),
                    record.text_hash,
                    record.embedding_model,
                    record.created_at,
                ),
            )

    # =========================================================================
    # Search Operations
    # =========================================================================

    async def search_sessions_full_text(
        self, user_id: str, query: str, limit: int = 20, offset: int = 0
    ) -> list[Session]:
        conn = self._require_conn("search_sessions")
        match = build_match_query(query)
        if match is None:
            return []

        async with conn.execute(
            f"""
            SELECT {_SESSION_SELECT}
            FROM sessions_fts
            JOIN sessions s ON s.id = sessions_fts.session_id
            WHERE sessions_fts MATCH ? AND s.user_id = ?
            ORDER BY bm25(sessions_fts), s.updated_at DESC, s.rowid DESC
            LIMIT ? OFFSET ?
            """,
            (match, user_id, limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def search_messages_full_text(
        self,
        user_id: str,
        query: str,
        limit: int = 50,
        session_id: str | None = None,
        offset: int = 0,
    ) -> list[MessageHit]:
        conn = self._require_conn("search_messages")
        match = build_match_query(query)
        if match is None:
            return []

        where_parts = ["messages_fts MATCH ?", "s.user_id = ?"]
        params: list[Any] = [match, user_id]
        if session_id is not None:
            where_parts.append("m.session_id = ?")
            params.append(session_id)
        params.extend([limit, offset])

        async with conn.execute(
            f"""
            SELECT {_MESSAGE_SELECT},
                   s.title AS session_title,
                   s.project_path AS session_project_path,
                   s.project_name AS session_project_name
            FROM messages_fts
            JOIN messages m ON m.id = messages_fts.message_id
            JOIN sessions s ON s.id = m.session_id
            WHERE {" AND ".join(where_parts)}
            ORDER BY bm25(messages_fts), m.created_at DESC, m.rowid DESC
            LIMIT ? OFFSET ?
            """,
            params,
        ) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_hit(row) for row in rows]

    def _row_to_hit(self, row: Any) -> MessageHit:
        return MessageHit(
            message=self._row_to_message(row),
            session_title=row["session_title"],
            project_path=row["session_project_path"],
            project_name=row["session_project_name"],
        )

    async def get_message_hits(self, user_id: str, message_ids: list[str]) -> list[MessageHit]:
        conn = self._require_conn("get_message_hits")
        found: dict[str, MessageHit] = {}
        for start in range(0, len(message_ids), _IN_CLAUSE_CHUNK):
            chunk = message_ids[start : start + _IN_CLAUSE_CHUNK]
            placeholders = ", ".join(["?"] * len(chunk))
            async with conn.execute(
                f"""
                SELECT {_MESSAGE_SELECT},
                       s.title AS session_title,
                       s.project_path AS session_project_path,
                       s.project_name AS session_project_name
                FROM messages m
                JOIN sessions s ON s.id = m.session_id
                WHERE s.user_id = ? AND m.id IN ({placeholders})
                """,
                (user_id, *chunk),
            ) as cursor:
                for row in await cursor.fetchall():
                    found[row["id"]] = self._row_to_hit(row)

        return [found[mid] for mid in message_ids if mid in found]

    async def vector_search(
        self, user_id: str, query_vector: list[float], top_k: int = 10
    ) -> list[VectorHit]:
        """Brute-force cosine similarity over the owner's session embeddings.

        The owner filter is applied in SQL before any scoring, so embeddings
        of other owners are never loaded.
        """
        conn = self._require_conn("vector_search")

        async with conn.execute(
            """
            SELECT e.session_id AS row_key, e.embedding_json
            FROM session_embeddings e
            JOIN sessions s ON s.id = e.session_id
            WHERE e.user_id = ? AND s.user_id = ?
            """,
            (user_id, user_id),
        ) as cursor:
            rows = await cursor.fetchall()

        ranked = rank_by_cosine(query_vector, rows, top_k, "session")
        return [VectorHit(session_id=key, score=score) for key, score in ranked]

    async def message_vector_search(
        self,
        user_id: str,
        query_vector: list[float],
        top_k: int = 10,
        session_id: str | None = None,
    ) -> list[MessageVectorHit]:
        """Brute-force cosine similarity over the owner's message embeddings."""
        conn = self._require_conn("message_vector_search")

        where_parts = ["e.user_id = ?", "s.user_id = ?"]
        params: list[Any] = [user_id, user_id]
        if session_id is not None:
            where_parts.append("e.session_id = ?")
            params.append(session_id)

        async with conn.execute(
            f"""
            SELECT e.message_id AS row_key, e.embedding_json
            FROM message_embeddings e
            JOIN messages m ON m.id = e.message_id
            JOIN sessions s ON s.id = m.session_id
            WHERE {" AND ".join(where_parts)}
            """,
            params,
        ) as cursor:
            rows = await cursor.fetchall()

        ranked = rank_by_cosine(query_vector, rows, top_k, "message")
        return [MessageVectorHit(message_id=key, score=score) for key, score in ranked]


def rank_by_cosine(
    query_vector: list[float], rows: list[Any], top_k: int, kind: str
) -> list[tuple[str, float]]:
    """
    Score ``(row_key, embedding_json)`` rows against a query vector.

    Rows whose dimensions differ from the query are skipped with a warning.
    A zero query vector matches nothing. Ties keep row order.
    """
    query_np = np.asarray(query_vector, dtype=np.float64)
    query_norm = np.linalg.norm(query_np)
    if not rows or query_norm == 0:
        return []

    keys: list[str] = []
    vectors: list[list[float]] = []
    for row in rows:
        vec = json.loads(row["embedding_json"])
        if len(vec) != len(query_vector):
            logger.warning(
                f"Skipping embedding of {kind} {row['row_key']}: "
                f"{len(vec)} dimensions, query has {len(query_vector)}"
            )
            continue
        keys.append(row["row_key"])
        vectors.append(vec)

    if not vectors:
        return []

    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * query_norm
    similarities = np.divide(
        matrix @ query_np, norms, out=np.zeros(len(vectors)), where=norms > 0
    )

    order = np.argsort(-similarities, kind="stable")[:top_k]
    return [(keys[i], float(similarities[i])) for i in order]
