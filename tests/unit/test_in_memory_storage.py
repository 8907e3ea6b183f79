"""Unit tests for InMemoryStorageAdapter."""

from datetime import datetime, timedelta, timezone

import pytest

from recollect.errors import ErrorKind, RecollectError
from recollect.memory.history import EntryPayload, HistoryRecord, StepPayload, TimelinePayload
from recollect.memory.types import (
    ConversationQueryOptions,
    CreateConversationInput,
    GetMessagesOptions,
    Message,
    WorkingMemoryScope,
)
from recollect.storage.in_memory import InMemoryStorageAdapter


class TickingClock:
    """Clock that advances one second on every call."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def text_message(message_id: str, role: str = "user", text: str = None) -> Message:
    return Message.from_text(message_id, role, text or f"Message {message_id}")


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def storage(clock):
    return InMemoryStorageAdapter(storage_limit=100, clock=clock)


class TestMessageStorage:
    """Tests for add_message / get_messages."""

    @pytest.mark.asyncio
    async def test_messages_returned_oldest_first(self, storage):
        """Test messages come back in insertion order."""
        for i in range(3):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")

        messages = await storage.get_messages("u1", "c1")
        assert [m.id for m in messages] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_returns_copies(self, storage):
        """Test mutating returned messages does not change stored ones."""
        await storage.add_message(text_message("m1", text="original"), "u1", "c1")

        messages = await storage.get_messages("u1", "c1")
        messages[0].parts[0]["text"] = "changed"

        again = await storage.get_messages("u1", "c1")
        assert again[0].text() == "original"

    @pytest.mark.asyncio
    async def test_eviction_is_fifo(self, clock):
        """Test only the most recent storage_limit messages survive."""
        storage = InMemoryStorageAdapter(storage_limit=3, clock=clock)
        for i in range(5):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")

        messages = await storage.get_messages("u1", "c1")
        assert [m.id for m in messages] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_eviction_applies_mid_batch(self, clock):
        """Test add_messages trims after every single append."""
        storage = InMemoryStorageAdapter(storage_limit=2, clock=clock)
        await storage.add_messages([text_message(f"m{i}") for i in range(4)], "u1", "c1")

        messages = await storage.get_messages("u1", "c1")
        assert [m.id for m in messages] == ["m2", "m3"]

    @pytest.mark.asyncio
    async def test_buckets_are_isolated(self, storage):
        """Test messages never cross users or conversations."""
        await storage.add_message(text_message("a"), "u1", "c1")
        await storage.add_message(text_message("b"), "u1", "c2")
        await storage.add_message(text_message("c"), "u2", "c1")

        assert [m.id for m in await storage.get_messages("u1", "c1")] == ["a"]
        assert [m.id for m in await storage.get_messages("u1", "c2")] == ["b"]
        assert [m.id for m in await storage.get_messages("u2", "c1")] == ["c"]
        assert await storage.get_messages("u3", "c1") == []

    @pytest.mark.asyncio
    async def test_eviction_is_per_bucket(self, clock):
        """Test filling one bucket does not evict from another."""
        storage = InMemoryStorageAdapter(storage_limit=2, clock=clock)
        await storage.add_message(text_message("keep"), "u1", "c2")
        for i in range(5):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")

        assert [m.id for m in await storage.get_messages("u1", "c2")] == ["keep"]

    @pytest.mark.asyncio
    async def test_invalid_storage_limit(self):
        """Test a storage limit below 1 is rejected."""
        with pytest.raises(ValueError):
            InMemoryStorageAdapter(storage_limit=0)


class TestMessageFilters:
    """Tests for GetMessagesOptions handling."""

    @pytest.mark.asyncio
    async def test_limit_takes_most_recent(self, storage):
        """Test limit returns the last N messages, not the first."""
        for i in range(10):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")

        messages = await storage.get_messages("u1", "c1", GetMessagesOptions(limit=3))
        assert [m.id for m in messages] == ["m7", "m8", "m9"]

    @pytest.mark.asyncio
    async def test_role_filter(self, storage):
        """Test roles restricts results."""
        await storage.add_message(text_message("u", role="user"), "u1", "c1")
        await storage.add_message(text_message("a", role="assistant"), "u1", "c1")
        await storage.add_message(text_message("s", role="system"), "u1", "c1")

        messages = await storage.get_messages(
            "u1", "c1", GetMessagesOptions(roles=["user", "system"])
        )
        assert [m.id for m in messages] == ["u", "s"]

    @pytest.mark.asyncio
    async def test_before_and_after_are_exclusive(self, storage, clock):
        """Test time bounds exclude messages created exactly at the bound."""
        start = clock.now
        for i in range(5):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")
        # m0..m4 were created at start + 1s .. start + 5s

        messages = await storage.get_messages(
            "u1",
            "c1",
            GetMessagesOptions(
                after=start + timedelta(seconds=1),
                before=start + timedelta(seconds=5),
            ),
        )
        assert [m.id for m in messages] == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_limit_applies_after_filters(self, storage, clock):
        """Test combined filters select first, then take the tail."""
        start = clock.now
        for i in range(8):
            role = "user" if i % 2 == 0 else "assistant"
            await storage.add_message(text_message(f"m{i}", role=role), "u1", "c1")

        messages = await storage.get_messages(
            "u1",
            "c1",
            GetMessagesOptions(
                limit=2,
                roles=["user"],
                before=start + timedelta(seconds=7),
            ),
        )
        # user messages before the bound: m0, m2, m4; the tail of two
        assert [m.id for m in messages] == ["m2", "m4"]

    @pytest.mark.asyncio
    async def test_clear_messages_one_conversation(self, storage):
        """Test clearing one conversation keeps the others."""
        await storage.add_message(text_message("a"), "u1", "c1")
        await storage.add_message(text_message("b"), "u1", "c2")

        await storage.clear_messages("u1", "c1")

        assert await storage.get_messages("u1", "c1") == []
        assert len(await storage.get_messages("u1", "c2")) == 1

    @pytest.mark.asyncio
    async def test_clear_messages_all_for_user(self, storage):
        """Test omitting conversation_id clears every bucket of the user only."""
        await storage.add_message(text_message("a"), "u1", "c1")
        await storage.add_message(text_message("b"), "u1", "c2")
        await storage.add_message(text_message("c"), "u2", "c1")

        await storage.clear_messages("u1")

        assert await storage.get_messages("u1", "c1") == []
        assert await storage.get_messages("u1", "c2") == []
        assert len(await storage.get_messages("u2", "c1")) == 1


class TestConversations:
    """Tests for conversation CRUD."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, storage):
        """Test create sets equal created_at and updated_at."""
        created = await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent", title="Chat")
        )

        assert created.created_at == created.updated_at
        fetched = await storage.get_conversation("c1")
        assert fetched == created

    @pytest.mark.asyncio
    async def test_create_duplicate(self, storage):
        """Test duplicate ids raise CONVERSATION_ALREADY_EXISTS."""
        conversation = CreateConversationInput(id="c1", user_id="u1", resource_id="agent")
        await storage.create_conversation(conversation)

        with pytest.raises(RecollectError) as exc_info:
            await storage.create_conversation(conversation)
        assert exc_info.value.kind is ErrorKind.CONVERSATION_ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_get_missing(self, storage):
        """Test unknown ids return None."""
        assert await storage.get_conversation("missing") is None

    @pytest.mark.asyncio
    async def test_update_merges_and_bumps(self, storage):
        """Test update changes given fields, keeps immutable ones and bumps updated_at."""
        created = await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent", title="Old")
        )

        updated = await storage.update_conversation(
            "c1", {"title": "New", "id": "hijack", "created_at": None}
        )

        assert updated.id == "c1"
        assert updated.title == "New"
        assert updated.created_at == created.created_at
        assert updated.updated_at > created.updated_at

    @pytest.mark.asyncio
    async def test_empty_update_still_bumps(self, storage):
        """Test an empty update refreshes updated_at."""
        created = await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent")
        )
        updated = await storage.update_conversation("c1", {})
        assert updated.updated_at > created.updated_at

    @pytest.mark.asyncio
    async def test_update_missing(self, storage):
        """Test updating an unknown conversation raises CONVERSATION_NOT_FOUND."""
        with pytest.raises(RecollectError) as exc_info:
            await storage.update_conversation("missing", {"title": "x"})
        assert exc_info.value.kind is ErrorKind.CONVERSATION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_delete_cascades_across_users(self, storage):
        """Test deleting a conversation removes its messages in every bucket."""
        await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent")
        )
        await storage.add_message(text_message("a"), "u1", "c1")
        await storage.add_message(text_message("b"), "u2", "c1")
        await storage.add_message(text_message("c"), "u1", "c2")

        await storage.delete_conversation("c1")

        assert await storage.get_conversation("c1") is None
        assert await storage.get_messages("u1", "c1") == []
        assert await storage.get_messages("u2", "c1") == []
        assert len(await storage.get_messages("u1", "c2")) == 1

    @pytest.mark.asyncio
    async def test_delete_missing(self, storage):
        """Test deleting an unknown conversation raises CONVERSATION_NOT_FOUND."""
        with pytest.raises(RecollectError) as exc_info:
            await storage.delete_conversation("missing")
        assert exc_info.value.kind is ErrorKind.CONVERSATION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_query_filters_order_and_pagination(self, storage):
        """Test query_conversations filters, orders and paginates."""
        for conversation_id, user_id, title in [
            ("c1", "u1", "Banana"),
            ("c2", "u1", "Apple"),
            ("c3", "u2", "Cherry"),
            ("c4", "u1", "Date"),
        ]:
            await storage.create_conversation(
                CreateConversationInput(
                    id=conversation_id, user_id=user_id, resource_id="agent", title=title
                )
            )

        newest_first = await storage.query_conversations(ConversationQueryOptions(user_id="u1"))
        assert [c.id for c in newest_first] == ["c4", "c2", "c1"]

        by_title = await storage.query_conversations(
            ConversationQueryOptions(order_by="title", order_direction="asc", limit=2, offset=1)
        )
        assert [c.title for c in by_title] == ["Banana", "Cherry"]

        assert [c.id for c in await storage.get_conversations_by_user_id("u2")] == ["c3"]
        assert len(await storage.get_conversations("agent")) == 4

    def test_query_options_validation(self):
        """Test unknown ordering options are rejected."""
        with pytest.raises(ValueError):
            ConversationQueryOptions(order_by="rank")
        with pytest.raises(ValueError):
            ConversationQueryOptions(order_direction="sideways")


class TestWorkingMemory:
    """Tests for working memory persistence."""

    @pytest.mark.asyncio
    async def test_conversation_scope(self, storage):
        """Test conversation working memory is stored on the conversation."""
        await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent")
        )

        await storage.set_working_memory(
            WorkingMemoryScope.CONVERSATION, "notes", conversation_id="c1"
        )

        assert (
            await storage.get_working_memory(WorkingMemoryScope.CONVERSATION, conversation_id="c1")
            == "notes"
        )
        conversation = await storage.get_conversation("c1")
        assert conversation.metadata["working_memory"] == "notes"

        await storage.delete_working_memory(WorkingMemoryScope.CONVERSATION, conversation_id="c1")
        assert (
            await storage.get_working_memory(WorkingMemoryScope.CONVERSATION, conversation_id="c1")
            is None
        )

    @pytest.mark.asyncio
    async def test_conversation_scope_missing_conversation(self, storage):
        """Test setting working memory on an unknown conversation raises."""
        with pytest.raises(RecollectError) as exc_info:
            await storage.set_working_memory(
                WorkingMemoryScope.CONVERSATION, "notes", conversation_id="missing"
            )
        assert exc_info.value.kind is ErrorKind.CONVERSATION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_user_scope(self, storage):
        """Test user working memory is independent of conversations."""
        await storage.set_working_memory(WorkingMemoryScope.USER, "profile", user_id="u1")

        assert await storage.get_working_memory(WorkingMemoryScope.USER, user_id="u1") == "profile"
        assert await storage.get_working_memory(WorkingMemoryScope.USER, user_id="u2") is None

        await storage.delete_working_memory(WorkingMemoryScope.USER, user_id="u1")
        assert await storage.get_working_memory(WorkingMemoryScope.USER, user_id="u1") is None

    @pytest.mark.asyncio
    async def test_survives_clear_messages(self, storage):
        """Test clearing messages leaves working memory alone."""
        await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent")
        )
        await storage.set_working_memory(
            WorkingMemoryScope.CONVERSATION, "notes", conversation_id="c1"
        )
        await storage.add_message(text_message("m1"), "u1", "c1")

        await storage.clear_messages("u1", "c1")

        assert (
            await storage.get_working_memory(WorkingMemoryScope.CONVERSATION, conversation_id="c1")
            == "notes"
        )


class TestUtilities:
    """Tests for stats and clear."""

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, storage):
        """Test get_stats counts and clear resets everything."""
        await storage.create_conversation(
            CreateConversationInput(id="c1", user_id="u1", resource_id="agent")
        )
        await storage.add_message(text_message("a"), "u1", "c1")
        await storage.add_message(text_message("b"), "u2", "c1")

        assert storage.get_stats() == {
            "total_conversations": 1,
            "total_users": 2,
            "total_messages": 2,
        }

        storage.clear()
        assert storage.get_stats()["total_messages"] == 0


class TestEvictionOrder:
    """Tests for eviction when the clock does not move forward."""

    @pytest.mark.asyncio
    async def test_backwards_clock_evicts_oldest_timestamp(self):
        """Test the message with the oldest created_at is evicted, not the first appended."""
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        times = iter([base + timedelta(seconds=s) for s in (10, 5, 20)])
        storage = InMemoryStorageAdapter(storage_limit=2, clock=lambda: next(times))

        for i in range(3):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")

        assert [m.id for m in await storage.get_messages("u1", "c1")] == ["m0", "m2"]

    @pytest.mark.asyncio
    async def test_frozen_clock_evicts_first_appended(self):
        """Test equal timestamps fall back to append order."""
        frozen = datetime(2024, 1, 1, tzinfo=timezone.utc)
        storage = InMemoryStorageAdapter(storage_limit=2, clock=lambda: frozen)

        for i in range(3):
            await storage.add_message(text_message(f"m{i}"), "u1", "c1")

        assert [m.id for m in await storage.get_messages("u1", "c1")] == ["m1", "m2"]


class TestConversationMessages:
    """Tests for get_conversation_messages."""

    @pytest.mark.asyncio
    async def test_across_users_oldest_first(self, storage):
        """Test messages of every user are merged by creation time."""
        await storage.add_message(text_message("a1"), "alice", "c1")
        await storage.add_message(text_message("b1"), "bob", "c1")
        await storage.add_message(text_message("a2"), "alice", "c1")
        await storage.add_message(text_message("x1"), "alice", "c2")

        messages = await storage.get_conversation_messages("c1")

        assert [m.id for m in messages] == ["a1", "b1", "a2"]

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, storage):
        """Test pagination from the oldest end; limit 0 returns the rest."""
        for i in range(5):
            await storage.add_message(text_message(f"m{i}"), f"u{i % 2}", "c1")

        page = await storage.get_conversation_messages("c1", limit=2, offset=1)
        rest = await storage.get_conversation_messages("c1", limit=0, offset=3)

        assert [m.id for m in page] == ["m1", "m2"]
        assert [m.id for m in rest] == ["m3", "m4"]
        assert await storage.get_conversation_messages("missing") == []


HISTORY_START = datetime(2024, 6, 1, tzinfo=timezone.utc)


def entry_record(entry_id: str, agent_id: str = "agent1", minute: int = 0) -> HistoryRecord:
    return HistoryRecord.of(
        EntryPayload(agent_id=agent_id, input="What is the weather?"),
        id=entry_id,
        timestamp=HISTORY_START + timedelta(minutes=minute),
    )


def step_record(step_id: str, history_id: str, content: str = "thinking") -> HistoryRecord:
    return HistoryRecord.of(
        StepPayload(history_id=history_id, agent_id="agent1", type="text", content=content),
        id=step_id,
    )


def timeline_record(event_id: str, history_id: str, minute: int) -> HistoryRecord:
    return HistoryRecord.of(
        TimelinePayload(history_id=history_id, agent_id="agent1", name="tool:search", type="tool"),
        id=event_id,
        timestamp=HISTORY_START + timedelta(minutes=minute),
    )


class TestHistory:
    """Tests for agent history entries, steps and timeline events."""

    @pytest.mark.asyncio
    async def test_entry_round_trip(self, storage):
        """Test an entry comes back with empty steps and events."""
        record = entry_record("h1")
        await storage.add_history_entry(record)

        entry = await storage.get_history_entry("h1")

        assert entry.record == record
        assert entry.steps == []
        assert entry.events == []
        assert await storage.get_history_entry("missing") is None

    @pytest.mark.asyncio
    async def test_update_entry(self, storage, clock):
        """Test updates merge payload fields and stamp updated_at."""
        await storage.add_history_entry(entry_record("h1"))

        updated = await storage.update_history_entry(
            "h1", {"status": "completed", "output": "Sunny", "agent_id": "ignored"}
        )

        assert updated.payload.status == "completed"
        assert updated.payload.output == "Sunny"
        assert updated.payload.agent_id == "agent1"
        assert updated.updated_at == clock.now
        assert (await storage.get_history_entry("h1")).record == updated

    @pytest.mark.asyncio
    async def test_update_entry_errors(self, storage):
        """Test unknown entries and unknown fields are rejected."""
        with pytest.raises(RecollectError) as exc_info:
            await storage.update_history_entry("missing", {"status": "error"})
        assert exc_info.value.kind is ErrorKind.HISTORY_NOT_FOUND

        await storage.add_history_entry(entry_record("h1"))
        with pytest.raises(ValueError):
            await storage.update_history_entry("h1", {"colour": "blue"})

    @pytest.mark.asyncio
    async def test_steps_keep_append_order(self, storage):
        """Test steps attach in append order and re-adding a step replaces it in place."""
        await storage.add_history_entry(entry_record("h1"))
        await storage.add_history_step(step_record("s1", "h1"))
        await storage.add_history_step(step_record("s2", "h1"))
        await storage.add_history_step(step_record("s1", "h1", content="revised"))

        entry = await storage.get_history_entry("h1")

        assert [s.id for s in entry.steps] == ["s1", "s2"]
        assert entry.steps[0].payload.content == "revised"

    @pytest.mark.asyncio
    async def test_step_requires_entry(self, storage):
        """Test a step for an unknown entry raises HISTORY_NOT_FOUND."""
        with pytest.raises(RecollectError) as exc_info:
            await storage.add_history_step(step_record("s1", "missing"))
        assert exc_info.value.kind is ErrorKind.HISTORY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_and_get_step(self, storage):
        """Test step updates are visible through get_history_step and the entry."""
        await storage.add_history_entry(entry_record("h1"))
        await storage.add_history_step(step_record("s1", "h1"))

        await storage.update_history_step("s1", {"content": "done", "name": "answer"})

        step = await storage.get_history_step("s1")
        assert step.payload.content == "done"
        assert step.payload.name == "answer"
        assert (await storage.get_history_entry("h1")).steps == [step]
        assert await storage.get_history_step("missing") is None
        with pytest.raises(RecollectError) as exc_info:
            await storage.update_history_step("missing", {"content": "x"})
        assert exc_info.value.kind is ErrorKind.HISTORY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_timeline_events_sorted_oldest_first(self, storage):
        """Test events attach to their entry ordered by timestamp."""
        await storage.add_history_entry(entry_record("h1"))
        await storage.add_history_entry(entry_record("h2"))
        await storage.add_timeline_event(timeline_record("e2", "h1", minute=5))
        await storage.add_timeline_event(timeline_record("e1", "h1", minute=1))
        await storage.add_timeline_event(timeline_record("other", "h2", minute=2))

        entry = await storage.get_history_entry("h1")

        assert [e.id for e in entry.events] == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_timeline_event_before_entry(self, storage):
        """Test an event recorded before its entry is attached once the entry exists."""
        await storage.add_timeline_event(timeline_record("e1", "h1", minute=1))
        await storage.add_history_entry(entry_record("h1"))

        assert [e.id for e in (await storage.get_history_entry("h1")).events] == ["e1"]

    @pytest.mark.asyncio
    async def test_entries_by_agent_newest_first(self, storage):
        """Test only the agent's entries are returned, newest first."""
        await storage.add_history_entry(entry_record("old", minute=1))
        await storage.add_history_entry(entry_record("new", minute=9))
        await storage.add_history_entry(entry_record("mid", minute=5))
        await storage.add_history_entry(entry_record("foreign", agent_id="agent2"))
        await storage.add_history_step(step_record("s1", "new"))

        entries = await storage.get_all_history_entries_by_agent("agent1")

        assert [e.id for e in entries] == ["new", "mid", "old"]
        assert [s.id for s in entries[0].steps] == ["s1"]
        assert await storage.get_all_history_entries_by_agent("nobody") == []

    @pytest.mark.asyncio
    async def test_wrong_kind_rejected(self, storage):
        """Test each add method only accepts records of its own kind."""
        await storage.add_history_entry(entry_record("h1"))
        with pytest.raises(ValueError):
            await storage.add_history_entry(step_record("s1", "h1"))
        with pytest.raises(ValueError):
            await storage.add_timeline_event(entry_record("h2"))

    @pytest.mark.asyncio
    async def test_returns_copies(self, storage):
        """Test mutating a returned entry does not change the stored one."""
        await storage.add_history_entry(entry_record("h1"))

        entry = await storage.get_history_entry("h1")
        entry.payload.metadata["touched"] = True

        assert (await storage.get_history_entry("h1")).payload.metadata == {}
