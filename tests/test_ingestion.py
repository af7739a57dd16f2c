"""
Tests for session and message ingestion.

Covers idempotent upserts, out-of-order delivery, aggregate counters and
the bounded searchable-text projection.
"""

import asyncio
from unittest.mock import patch

import pytest

from session_sync_storage.backends.base import MessageInput, MessageRole, PartInput, SessionInput
from session_sync_storage.exceptions import (
    ConflictError,
    IngestionError,
    SessionNotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from session_sync_storage.ingestion import IngestionConfig, IngestionEngine, append_searchable_text

OWNER = "user-alice"
OTHER_OWNER = "user-bob"


def text_part(text: str) -> PartInput:
    return PartInput(type="text", content={"text": text})


class TestSessionUpsert:
    """Tests for upsert_session."""

    @pytest.mark.asyncio
    async def test_create_defaults(self, engine, backend):
        """A new session gets zeroed counters, default source and title text."""
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", title="Fix login")
        )

        session = await backend.get_session(session_id)
        assert session.user_id == OWNER
        assert session.prompt_tokens == 0
        assert session.completion_tokens == 0
        assert session.total_tokens == 0
        assert session.cost == 0
        assert session.message_count == 0
        assert session.source == "opencode"
        assert session.searchable_text == "Fix login"

    @pytest.mark.asyncio
    async def test_total_tokens_computed_on_create(self, engine, backend):
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", prompt_tokens=10, completion_tokens=5)
        )
        session = await backend.get_session(session_id)
        assert session.total_tokens == 15

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, backend):
        """The same payload twice gives one row in the same final state."""
        payload = SessionInput(
            external_id="s1", title="Fix login", model="gpt", prompt_tokens=10, cost=0.5
        )

        first_id = await engine.upsert_session(OWNER, payload)
        after_first = await backend.get_session(first_id)
        second_id = await engine.upsert_session(OWNER, payload)
        after_second = await backend.get_session(second_id)

        assert first_id == second_id
        assert after_first == after_second
        assert len(await backend.list_sessions(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_zero_tokens_never_overwrite(self, engine, backend):
        """A later upsert with zero tokens keeps the known totals."""
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", prompt_tokens=100, completion_tokens=50)
        )
        await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", prompt_tokens=0, completion_tokens=0, cost=0)
        )

        session = await backend.get_session(session_id)
        assert session.prompt_tokens == 100
        assert session.completion_tokens == 50
        assert session.total_tokens == 150

    @pytest.mark.asyncio
    async def test_nonzero_tokens_replace_and_recompute_total(self, engine, backend):
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", prompt_tokens=100, completion_tokens=50)
        )
        await engine.upsert_session(OWNER, SessionInput(external_id="s1", prompt_tokens=300))

        session = await backend.get_session(session_id)
        assert session.prompt_tokens == 300
        assert session.completion_tokens == 50
        assert session.total_tokens == 350

    @pytest.mark.asyncio
    async def test_absent_fields_keep_existing(self, engine, backend):
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", title="Original", project_path="/repo")
        )
        await engine.upsert_session(OWNER, SessionInput(external_id="s1", model="claude"))

        session = await backend.get_session(session_id)
        assert session.title == "Original"
        assert session.project_path == "/repo"
        assert session.model == "claude"

    @pytest.mark.asyncio
    async def test_source_aliases(self, engine, backend):
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", source="cursor")
        )
        assert (await backend.get_session(session_id)).source == "cursor-sync"

    @pytest.mark.asyncio
    async def test_same_external_id_per_owner(self, engine):
        """External ids are scoped per owner."""
        mine = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        theirs = await engine.upsert_session(OTHER_OWNER, SessionInput(external_id="s1"))
        assert mine != theirs

    @pytest.mark.asyncio
    async def test_requires_owner(self, engine):
        with pytest.raises(UnauthenticatedError):
            await engine.upsert_session(None, SessionInput(external_id="s1"))
        with pytest.raises(UnauthenticatedError):
            await engine.upsert_session("  ", SessionInput(external_id="s1"))

    @pytest.mark.asyncio
    async def test_requires_external_id(self, engine):
        with pytest.raises(ValidationError):
            await engine.upsert_session(OWNER, SessionInput(external_id=""))

    @pytest.mark.asyncio
    async def test_from_payload_accepts_session_id(self, engine, backend):
        data = SessionInput.from_payload({"sessionId": "s9", "title": "T", "promptTokens": 3})
        session_id = await engine.upsert_session(OWNER, data)
        session = await backend.get_session(session_id)
        assert session.external_id == "s9"
        assert session.prompt_tokens == 3


class TestMessageUpsert:
    """Tests for upsert_message."""

    @pytest.mark.asyncio
    async def test_out_of_order_creates_placeholder(self, engine, backend):
        """A message for an unknown session creates exactly one placeholder."""
        await engine.upsert_message(
            OWNER, MessageInput(session_external_id="s1", external_id="m1", role="user")
        )
        await engine.upsert_message(
            OWNER, MessageInput(session_external_id="s1", external_id="m2", role="assistant")
        )
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", title="Later title")
        )

        sessions = await backend.list_sessions(OWNER)
        assert [s.id for s in sessions] == [session_id]
        assert sessions[0].title == "Later title"
        assert sessions[0].message_count == 2

    @pytest.mark.asyncio
    async def test_placeholder_becomes_searchable_by_title(self, engine, backend):
        await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1",
                external_id="m1",
                parts=[text_part("check auth.ts")],
            ),
        )
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", title="Fix login")
        )
        session = await backend.get_session(session_id)
        assert session.searchable_text == "check auth.ts Fix login"

    @pytest.mark.asyncio
    async def test_placeholder_source_normalized(self, engine, backend):
        await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", source="cursor"),
        )
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.source == "cursor-sync"

    @pytest.mark.asyncio
    async def test_placeholder_takes_message_model(self, engine, backend):
        await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", model="claude-sonnet"),
        )
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.model == "claude-sonnet"

        await engine.upsert_session(OWNER, SessionInput(external_id="s1", model="gpt-4o"))
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_aggregates_increment_on_create(self, engine, backend):
        await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        for i, (prompt, completion) in enumerate([(10, 5), (20, 0), (0, 7)]):
            await engine.upsert_message(
                OWNER,
                MessageInput(
                    session_external_id="s1",
                    external_id=f"m{i}",
                    prompt_tokens=prompt,
                    completion_tokens=completion,
                ),
            )

        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.message_count == 3
        assert session.prompt_tokens == 30
        assert session.completion_tokens == 12
        assert session.total_tokens == 42

    @pytest.mark.asyncio
    async def test_update_does_not_recount(self, engine, backend):
        """Re-delivering a message never double-counts tokens or messages."""
        data = MessageInput(
            session_external_id="s1", external_id="m1", prompt_tokens=10, completion_tokens=5
        )
        first = await engine.upsert_message(OWNER, data)
        second = await engine.upsert_message(OWNER, data)

        assert first == second
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.message_count == 1
        assert session.total_tokens == 15

    @pytest.mark.asyncio
    async def test_update_patches_only_supplied_fields(self, engine, backend):
        await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1",
                external_id="m1",
                role="assistant",
                text_content="draft",
                model="gpt",
            ),
        )
        await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", text_content="final"),
        )

        message = await backend.get_message_by_external_id("m1")
        assert message.text_content == "final"
        assert message.model == "gpt"
        assert message.role == MessageRole.ASSISTANT

    @pytest.mark.asyncio
    async def test_parts_replaced_wholesale(self, engine, backend):
        """Parts of a re-delivered message equal the latest delivery's parts."""
        message_id = await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1",
                external_id="m1",
                parts=[text_part("a"), text_part("b"), text_part("c")],
            ),
        )
        await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1",
                external_id="m1",
                parts=[PartInput(type="tool-call", content={"name": "bash"}), text_part("z")],
            ),
        )

        parts = (await backend.list_parts([message_id]))[message_id]
        assert [p.order for p in parts] == [0, 1]
        assert [p.type for p in parts] == ["tool-call", "text"]
        assert parts[1].content == {"text": "z"}

    @pytest.mark.asyncio
    async def test_parts_untouched_when_not_sent(self, engine, backend):
        message_id = await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", parts=[text_part("keep")]),
        )
        await engine.upsert_message(
            OWNER, MessageInput(session_external_id="s1", external_id="m1", model="x")
        )

        parts = (await backend.list_parts([message_id]))[message_id]
        assert [p.content for p in parts] == [{"text": "keep"}]

    @pytest.mark.asyncio
    async def test_searchable_text_appends(self, engine, backend):
        await engine.upsert_session(OWNER, SessionInput(external_id="s1", title="fix login"))
        await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1",
                external_id="m1",
                parts=[
                    text_part("check"),
                    PartInput(type="tool-call", content={"name": "read"}),
                    text_part("auth.ts"),
                ],
            ),
        )

        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.searchable_text == "fix login check auth.ts"

    @pytest.mark.asyncio
    async def test_searchable_text_bounded(self, backend):
        """The projection never exceeds the configured limit."""
        engine = IngestionEngine(backend, config=IngestionConfig(searchable_text_limit=100))
        for i in range(20):
            await engine.upsert_message(
                OWNER,
                MessageInput(
                    session_external_id="s1",
                    external_id=f"m{i}",
                    parts=[text_part(f"message number {i} " * 3)],
                ),
            )

        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert len(session.searchable_text) == 100
        assert session.searchable_text.startswith("message number 0")

    @pytest.mark.asyncio
    async def test_default_limit_is_ten_thousand(self, engine, backend):
        await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1", external_id="m1", parts=[text_part("x" * 12_000)]
            ),
        )
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert len(session.searchable_text) == 10_000

    @pytest.mark.asyncio
    async def test_redelivery_keeps_searchable_text(self, engine, backend):
        """The same parts delivered again do not grow the projection."""
        await engine.upsert_session(OWNER, SessionInput(external_id="s1", title="fix login"))
        data = MessageInput(
            session_external_id="s1",
            external_id="m1",
            parts=[text_part("check"), text_part("auth.ts")],
        )
        await engine.upsert_message(OWNER, data)
        before = await backend.get_session_by_external_id(OWNER, "s1")

        await engine.upsert_message(OWNER, data)
        await engine.upsert_message(OWNER, data)

        after = await backend.get_session_by_external_id(OWNER, "s1")
        assert after.searchable_text == before.searchable_text == "fix login check auth.ts"
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_redelivered_long_message_leaves_room(self, engine, backend):
        """Re-sending a large message must not fill the cap and hide later messages."""
        long_text = "lorem ipsum " * 350
        assert len(long_text) == 4_200
        data = MessageInput(
            session_external_id="s1", external_id="m1", parts=[text_part(long_text)]
        )
        for _ in range(3):
            await engine.upsert_message(OWNER, data)
        await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m2", parts=[text_part("zanzibar")]),
        )

        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.searchable_text.endswith("zanzibar")
        assert len(await backend.search_sessions_full_text(OWNER, "zanzibar")) == 1

    @pytest.mark.asyncio
    async def test_changed_parts_are_appended(self, engine, backend):
        """An edited message adds its new text; the parts are replaced."""
        await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", parts=[text_part("draft")]),
        )
        message_id = await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", parts=[text_part("final")]),
        )

        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.searchable_text == "draft final"
        parts = (await backend.list_parts([message_id]))[message_id]
        assert [p.content for p in parts] == [{"text": "final"}]

    @pytest.mark.asyncio
    async def test_redelivery_reports_skipped(self, engine):
        data = MessageInput(
            session_external_id="s1",
            external_id="m1",
            text_content="hi",
            parts=[text_part("hi")],
        )
        first = await engine.batch_upsert_messages(OWNER, [data])
        second = await engine.batch_upsert_messages(OWNER, [data])

        assert first.inserted == 1
        assert second.skipped == 1
        assert second.updated == 0

    @pytest.mark.asyncio
    async def test_concurrent_identical_upserts_count_once(self, engine, backend):
        """Identical new-message upserts racing each other leave one message."""
        data = MessageInput(
            session_external_id="s1",
            external_id="m1",
            prompt_tokens=3,
            completion_tokens=4,
            parts=[text_part("hi")],
        )

        ids = await asyncio.gather(*(engine.upsert_message(OWNER, data) for _ in range(5)))

        assert len(set(ids)) == 1
        sessions = await backend.list_sessions(OWNER)
        assert len(sessions) == 1
        assert sessions[0].message_count == 1
        assert sessions[0].prompt_tokens == 3
        assert sessions[0].completion_tokens == 4
        assert sessions[0].total_tokens == 7
        assert sessions[0].searchable_text == "hi"

    @pytest.mark.asyncio
    async def test_conflict_on_insert_retries_as_update(self, engine, backend):
        """A duplicate-key insert (lost race) is retried and lands on the update path."""
        original_id = await engine.upsert_message(
            OWNER,
            MessageInput(
                session_external_id="s1",
                external_id="m1",
                text_content="draft",
                prompt_tokens=3,
            ),
        )

        real_lookup = backend.get_message_by_external_id
        lookups: list[str] = []

        async def racing_lookup(external_id):
            # The first lookup misses the row another writer just committed
            lookups.append(external_id)
            if len(lookups) == 1:
                return None
            return await real_lookup(external_id)

        with patch.object(backend, "get_message_by_external_id", new=racing_lookup), patch.object(
            backend, "insert_message", side_effect=[ConflictError("messages", "m1")]
        ) as insert:
            message_id = await engine.upsert_message(
                OWNER,
                MessageInput(
                    session_external_id="s1",
                    external_id="m1",
                    text_content="final",
                    prompt_tokens=3,
                ),
            )

        assert insert.call_count == 1
        assert lookups == ["m1", "m1"]
        assert message_id == original_id
        message = await backend.get_message(message_id)
        assert message.text_content == "final"
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.message_count == 1
        assert session.prompt_tokens == 3

    @pytest.mark.asyncio
    async def test_unknown_role_coerced(self, engine, backend):
        await engine.upsert_message(
            OWNER, MessageInput(session_external_id="s1", external_id="m1", role="narrator")
        )
        message = await backend.get_message_by_external_id("m1")
        assert message.role == MessageRole.UNKNOWN

    @pytest.mark.asyncio
    async def test_message_id_of_other_owner_rejected(self, engine, backend):
        """A message external id already used by another owner is not patched."""
        await engine.upsert_message(
            OTHER_OWNER,
            MessageInput(session_external_id="s1", external_id="m1", text_content="theirs"),
        )
        with pytest.raises(IngestionError):
            await engine.upsert_message(
                OWNER,
                MessageInput(session_external_id="s1", external_id="m1", text_content="mine"),
            )

        message = await backend.get_message_by_external_id("m1")
        assert message.text_content == "theirs"
        # The placeholder session for OWNER was rolled back with the failed call
        assert await backend.get_session_by_external_id(OWNER, "s1") is None

    @pytest.mark.asyncio
    async def test_requires_owner(self, engine):
        with pytest.raises(UnauthenticatedError):
            await engine.upsert_message(
                None, MessageInput(session_external_id="s1", external_id="m1")
            )

    @pytest.mark.asyncio
    async def test_requires_keys(self, engine):
        with pytest.raises(ValidationError):
            await engine.upsert_message(
                OWNER, MessageInput(session_external_id="", external_id="m1")
            )
        with pytest.raises(ValidationError):
            await engine.upsert_message(
                OWNER, MessageInput(session_external_id="s1", external_id="")
            )

    @pytest.mark.asyncio
    async def test_from_payload(self, engine, backend):
        data = MessageInput.from_payload(
            {
                "sessionExternalId": "s1",
                "externalId": "m1",
                "role": "assistant",
                "textContent": "hello",
                "promptTokens": 4,
                "parts": [{"type": "text", "content": {"text": "hello"}}],
            }
        )
        await engine.upsert_message(OWNER, data)
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.prompt_tokens == 4
        assert session.searchable_text == "hello"


class TestBatchUpserts:
    """Tests for batch ingestion."""

    @pytest.mark.asyncio
    async def test_batch_sessions_counts(self, engine):
        await engine.upsert_session(OWNER, SessionInput(external_id="s1", title="a"))

        result = await engine.batch_upsert_sessions(
            OWNER,
            [
                SessionInput(external_id="s1", title="a"),
                SessionInput(external_id="s1", title="b"),
                SessionInput(external_id="s2"),
                SessionInput(external_id=""),
            ],
        )

        assert result.skipped == 1
        assert result.updated == 1
        assert result.inserted == 1
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_batch_messages_continue_after_failure(self, engine, backend):
        result = await engine.batch_upsert_messages(
            OWNER,
            [
                MessageInput(session_external_id="s1", external_id="m1", prompt_tokens=1),
                MessageInput(session_external_id="s1", external_id=""),
                MessageInput(session_external_id="s1", external_id="m2", prompt_tokens=2),
            ],
        )

        assert result.inserted == 2
        assert len(result.errors) == 1
        session = await backend.get_session_by_external_id(OWNER, "s1")
        assert session.prompt_tokens == 3

    @pytest.mark.asyncio
    async def test_batch_requires_owner(self, engine):
        with pytest.raises(UnauthenticatedError):
            await engine.batch_upsert_sessions(None, [])


class TestIndexingSchedule:
    """Upserts hand touched sessions to the indexing queue."""

    class RecordingQueue:
        def __init__(self):
            self.enqueued: list[str] = []
            self.messages: list[str] = []

        def enqueue(self, session_id: str) -> bool:
            self.enqueued.append(session_id)
            return True

        def enqueue_message(self, message_id: str) -> bool:
            self.messages.append(message_id)
            return True

    class StoppedQueue:
        def enqueue(self, session_id: str) -> bool:
            raise RuntimeError("Indexing queue is stopped")

        def enqueue_message(self, message_id: str) -> bool:
            raise RuntimeError("Indexing queue is stopped")

    @pytest.mark.asyncio
    async def test_enqueue_after_upserts(self, backend):
        queue = self.RecordingQueue()
        engine = IngestionEngine(backend, indexer=queue)

        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        message_id = await engine.upsert_message(
            OWNER, MessageInput(session_external_id="s1", external_id="m1")
        )

        assert queue.enqueued == [session_id, session_id]
        assert queue.messages == [message_id]

    @pytest.mark.asyncio
    async def test_queue_failure_does_not_fail_upsert(self, backend):
        engine = IngestionEngine(backend, indexer=self.StoppedQueue())
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        assert await backend.get_session(session_id) is not None
        message_id = await engine.upsert_message(
            OWNER, MessageInput(session_external_id="s1", external_id="m1")
        )
        assert await backend.get_message(message_id) is not None

    @pytest.mark.asyncio
    async def test_batch_schedules_each_message_once(self, backend):
        queue = self.RecordingQueue()
        engine = IngestionEngine(backend, indexer=queue)

        await engine.batch_upsert_messages(
            OWNER,
            [
                MessageInput(session_external_id="s1", external_id="m1"),
                MessageInput(session_external_id="s1", external_id="m1"),
                MessageInput(session_external_id="s1", external_id="m2"),
            ],
        )

        assert len(queue.enqueued) == 1
        assert len(queue.messages) == 2


class TestSessionManagement:
    """Tests for owner-scoped reads, visibility, deletion and eval metadata."""

    @pytest.mark.asyncio
    async def test_get_session_detail_ordering(self, engine):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        for i in range(3):
            await engine.upsert_message(
                OWNER,
                MessageInput(
                    session_external_id="s1",
                    external_id=f"m{i}",
                    created_at=1_000 + i,
                    parts=[text_part(f"{i}-a"), text_part(f"{i}-b")],
                ),
            )

        detail = await engine.get_session(OWNER, session_id)
        assert [m.message.external_id for m in detail.messages] == ["m0", "m1", "m2"]
        assert [p.order for p in detail.messages[0].parts] == [0, 1]

    @pytest.mark.asyncio
    async def test_get_session_other_owner_or_anonymous(self, engine):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        assert await engine.get_session(OTHER_OWNER, session_id) is None
        assert await engine.get_session(None, session_id) is None

    @pytest.mark.asyncio
    async def test_list_sessions_anonymous_is_empty(self, engine):
        await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        assert await engine.list_sessions(None) == []

    @pytest.mark.asyncio
    async def test_delete_cascades(self, engine, backend, indexer):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1", title="t"))
        message_id = await engine.upsert_message(
            OWNER,
            MessageInput(session_external_id="s1", external_id="m1", parts=[text_part("x")]),
        )
        await indexer.index_session(session_id)

        assert await engine.delete_session(OWNER, session_id) is True

        assert await backend.get_session(session_id) is None
        assert await backend.get_message_by_external_id("m1") is None
        assert (await backend.list_parts([message_id]))[message_id] == []
        assert await backend.get_embedding(session_id) is None

    @pytest.mark.asyncio
    async def test_delete_not_owned_or_missing(self, engine, backend):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        assert await engine.delete_session(OTHER_OWNER, session_id) is False
        assert await engine.delete_session(OWNER, "missing") is False
        assert await backend.get_session(session_id) is not None

    @pytest.mark.asyncio
    async def test_delete_requires_owner(self, engine):
        with pytest.raises(UnauthenticatedError):
            await engine.delete_session(None, "anything")

    @pytest.mark.asyncio
    async def test_visibility_slug_generated_once(self, engine):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))

        is_public, slug = await engine.set_visibility(OWNER, session_id, True)
        assert is_public is True
        assert slug

        await engine.set_visibility(OWNER, session_id, False)
        _, slug_again = await engine.set_visibility(OWNER, session_id, True)
        assert slug_again == slug

    @pytest.mark.asyncio
    async def test_public_session_redacted(self, engine):
        session_id = await engine.upsert_session(
            OWNER, SessionInput(external_id="s1", title="shared")
        )
        _, slug = await engine.set_visibility(OWNER, session_id, True)

        detail = await engine.get_public_session(slug)
        assert detail.session.title == "shared"
        assert detail.session.user_id == ""
        assert detail.session.searchable_text is None

        await engine.set_visibility(OWNER, session_id, False)
        assert await engine.get_public_session(slug) is None

    @pytest.mark.asyncio
    async def test_visibility_not_owned(self, engine):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        with pytest.raises(SessionNotFoundError):
            await engine.set_visibility(OTHER_OWNER, session_id, True)

    @pytest.mark.asyncio
    async def test_eval_metadata(self, engine):
        session_id = await engine.upsert_session(OWNER, SessionInput(external_id="s1"))
        await engine.upsert_session(OWNER, SessionInput(external_id="s2"))

        await engine.set_eval_ready(OWNER, session_id, True)
        await engine.update_eval_notes(OWNER, session_id, "good trace")
        tags = await engine.update_eval_tags(OWNER, session_id, [" auth ", "bug", "auth", ""])

        assert tags == ["auth", "bug"]
        ready = await engine.list_eval_sessions(OWNER)
        assert [s.id for s in ready] == [session_id]
        assert ready[0].eval_notes == "good trace"
        assert ready[0].eval_tags == ["auth", "bug"]
        assert ready[0].reviewed_at is not None


class TestAppendSearchableText:
    """Tests for the projection helper."""

    def test_space_joined(self):
        assert append_searchable_text("a", "b", 10) == "a b"

    def test_empty_current(self):
        assert append_searchable_text(None, "b", 10) == "b"
        assert append_searchable_text("", "b", 10) == "b"

    def test_truncates_to_prefix(self):
        assert append_searchable_text("abcdef", "ghij", 8) == "abcdef g"
