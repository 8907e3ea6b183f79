"""In-memory conversation and message storage.

Messages live in per-(user, conversation) buckets that behave like ring
buffers: after every append, a bucket longer than storage_limit is trimmed
from the front so only the most recent storage_limit messages remain.
"""

import copy
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from recollect.errors import (
    conversation_already_exists,
    conversation_not_found,
    history_not_found,
)
from recollect.memory.history import HistoryEntry, HistoryKind, HistoryRecord, apply_updates
from recollect.memory.types import (
    Conversation,
    ConversationQueryOptions,
    CreateConversationInput,
    GetMessagesOptions,
    Message,
    StoredMessage,
    WorkingMemoryScope,
    utcnow,
)
from recollect.storage.base import DEFAULT_STORAGE_LIMIT, WORKING_MEMORY_KEY, StorageAdapter

logger = logging.getLogger(__name__)

# Fields update_conversation never touches
_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "updated_at"})


def _sort_key(conversation: Conversation, order_by: str) -> Any:
    if order_by == "updated_at":
        return conversation.updated_at
    if order_by == "title":
        return conversation.title
    return conversation.created_at


def apply_message_filters(
    stored: list[StoredMessage], options: GetMessagesOptions, default_limit: int
) -> list[StoredMessage]:
    """Filter, sort oldest first, then keep the most recent ``limit`` entries.

    Role and time filters run before the limit, so the limit always takes the
    tail of the filtered list.
    """
    messages = list(stored)

    if options.roles:
        roles = set(options.roles)
        messages = [m for m in messages if m.message.role in roles]

    if options.before is not None:
        messages = [m for m in messages if m.created_at < options.before]

    if options.after is not None:
        messages = [m for m in messages if m.created_at > options.after]

    # Stable sort: equal timestamps keep append order
    messages.sort(key=lambda m: m.created_at)

    limit = options.limit if options.limit is not None else default_limit
    if limit and limit > 0 and len(messages) > limit:
        messages = messages[-limit:]

    return messages


class InMemoryStorageAdapter(StorageAdapter):
    """Conversation and message storage held in process memory.

    Args:
        storage_limit: Maximum messages kept per (user, conversation) (default: 100)
        clock: Time source for created_at/updated_at (default: UTC now)

    Example:
        >>> storage = InMemoryStorageAdapter(storage_limit=2)
        >>> for text in ("First", "Second", "Third"):
        ...     await storage.add_message(Message.from_text(text, "user", text), "u1", "c1")
        >>> [m.text() for m in await storage.get_messages("u1", "c1")]
        ['Second', 'Third']
    """

    def __init__(
        self,
        storage_limit: int = DEFAULT_STORAGE_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if storage_limit < 1:
            raise ValueError(f"storage_limit must be at least 1, got {storage_limit}")

        self.storage_limit = storage_limit
        self._clock = clock or utcnow
        self._messages: dict[str, dict[str, list[StoredMessage]]] = {}
        self._conversations: dict[str, Conversation] = {}
        self._user_working_memory: dict[str, str] = {}
        self._history_entries: dict[str, HistoryRecord] = {}
        self._history_steps: dict[str, HistoryRecord] = {}
        self._entry_steps: dict[str, list[str]] = {}
        self._timeline_events: dict[str, HistoryRecord] = {}

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def add_message(self, message: Message, user_id: str, conversation_id: str) -> None:
        bucket = self._messages.setdefault(user_id, {}).setdefault(conversation_id, [])
        bucket.append(
            StoredMessage(
                message=message.copy(),
                user_id=user_id,
                conversation_id=conversation_id,
                created_at=self._clock(),
            )
        )
        # Keep the bucket ordered by created_at; ties keep append order
        if len(bucket) > 1 and bucket[-1].created_at < bucket[-2].created_at:
            bucket.sort(key=lambda m: m.created_at)

        overflow = len(bucket) - self.storage_limit
        if overflow > 0:
            del bucket[:overflow]
            logger.debug(
                f"Evicted {overflow} message(s) from {user_id}/{conversation_id} "
                f"(limit {self.storage_limit})"
            )

    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        options: Optional[GetMessagesOptions] = None,
    ) -> list[Message]:
        bucket = self._messages.get(user_id, {}).get(conversation_id, [])
        selected = apply_message_filters(bucket, options or GetMessagesOptions(), self.storage_limit)
        return [stored.to_message() for stored in selected]

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 100, offset: int = 0
    ) -> list[Message]:
        stored = [
            message
            for buckets in self._messages.values()
            for message in buckets.get(conversation_id, [])
        ]
        stored.sort(key=lambda m: m.created_at)

        start = max(offset, 0)
        stored = stored[start : start + limit] if limit > 0 else stored[start:]
        return [message.to_message() for message in stored]

    async def clear_messages(self, user_id: str, conversation_id: Optional[str] = None) -> None:
        buckets = self._messages.get(user_id)
        if buckets is None:
            return

        if conversation_id is not None:
            if conversation_id in buckets:
                buckets[conversation_id] = []
        else:
            self._messages[user_id] = {}

    # =========================================================================
    # Conversation Operations
    # =========================================================================

    async def create_conversation(self, input: CreateConversationInput) -> Conversation:
        """Create a conversation.

        Raises:
            RecollectError: CONVERSATION_ALREADY_EXISTS if the id is taken
        """
        if input.id in self._conversations:
            raise conversation_already_exists(input.id)

        now = self._clock()
        conversation = Conversation(
            id=input.id,
            user_id=input.user_id,
            resource_id=input.resource_id,
            title=input.title,
            metadata=copy.deepcopy(input.metadata),
            created_at=now,
            updated_at=now,
        )
        self._conversations[conversation.id] = conversation
        return conversation.copy()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.copy() if conversation else None

    async def query_conversations(self, options: ConversationQueryOptions) -> list[Conversation]:
        conversations = list(self._conversations.values())

        if options.user_id:
            conversations = [c for c in conversations if c.user_id == options.user_id]

        if options.resource_id:
            conversations = [c for c in conversations if c.resource_id == options.resource_id]

        conversations.sort(
            key=lambda c: _sort_key(c, options.order_by),
            reverse=options.order_direction == "DESC",
        )

        offset = max(options.offset, 0)
        conversations = conversations[offset : offset + options.limit]
        return [c.copy() for c in conversations]

    async def update_conversation(
        self, conversation_id: str, updates: dict[str, Any]
    ) -> Conversation:
        """Merge updates into a conversation and bump updated_at.

        Raises:
            RecollectError: CONVERSATION_NOT_FOUND if the id is unknown
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise conversation_not_found(conversation_id)

        for key, value in updates.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            if not hasattr(conversation, key):
                raise ValueError(f"Unknown conversation field '{key}'")
            setattr(conversation, key, copy.deepcopy(value))

        conversation.updated_at = max(self._clock(), conversation.updated_at)
        return conversation.copy()

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and its messages in every user bucket.

        Raises:
            RecollectError: CONVERSATION_NOT_FOUND if the id is unknown
        """
        if conversation_id not in self._conversations:
            raise conversation_not_found(conversation_id)

        del self._conversations[conversation_id]
        for buckets in self._messages.values():
            buckets.pop(conversation_id, None)

    # =========================================================================
    # Working Memory
    # =========================================================================

    async def get_working_memory(
        self,
        scope: WorkingMemoryScope,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        if scope is WorkingMemoryScope.CONVERSATION and conversation_id:
            conversation = self._conversations.get(conversation_id)
            value = conversation.metadata.get(WORKING_MEMORY_KEY) if conversation else None
            return value if isinstance(value, str) else None

        if scope is WorkingMemoryScope.USER and user_id:
            return self._user_working_memory.get(user_id)

        return None

    async def set_working_memory(
        self,
        scope: WorkingMemoryScope,
        content: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if scope is WorkingMemoryScope.CONVERSATION and conversation_id:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise conversation_not_found(conversation_id)
            conversation.metadata[WORKING_MEMORY_KEY] = content
            conversation.updated_at = max(self._clock(), conversation.updated_at)
        elif scope is WorkingMemoryScope.USER and user_id:
            self._user_working_memory[user_id] = content

    async def delete_working_memory(
        self,
        scope: WorkingMemoryScope,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if scope is WorkingMemoryScope.CONVERSATION and conversation_id:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None and WORKING_MEMORY_KEY in conversation.metadata:
                del conversation.metadata[WORKING_MEMORY_KEY]
                conversation.updated_at = max(self._clock(), conversation.updated_at)
        elif scope is WorkingMemoryScope.USER and user_id:
            self._user_working_memory.pop(user_id, None)

    # =========================================================================
    # Agent History
    # =========================================================================

    def _assemble(self, entry: HistoryRecord) -> HistoryEntry:
        steps = [
            self._history_steps[step_id].copy()
            for step_id in self._entry_steps.get(entry.id, [])
            if self._history_steps[step_id].history_id == entry.id
        ]
        events = [e.copy() for e in self._timeline_events.values() if e.history_id == entry.id]
        events.sort(key=lambda e: e.timestamp)
        return HistoryEntry(record=entry.copy(), steps=steps, events=events)

    async def add_history_entry(self, entry: HistoryRecord) -> None:
        entry.require_kind(HistoryKind.ENTRY)
        self._history_entries[entry.id] = entry.copy()

    async def update_history_entry(self, entry_id: str, updates: dict[str, Any]) -> HistoryRecord:
        entry = self._history_entries.get(entry_id)
        if entry is None:
            raise history_not_found(entry_id)
        updated = apply_updates(entry, updates, self._clock())
        self._history_entries[entry_id] = updated
        return updated.copy()

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        entry = self._history_entries.get(entry_id)
        return self._assemble(entry) if entry else None

    async def add_history_step(self, step: HistoryRecord) -> None:
        step.require_kind(HistoryKind.STEP)
        history_id = step.history_id
        assert history_id is not None
        if history_id not in self._history_entries:
            raise history_not_found(history_id)

        step_ids = self._entry_steps.setdefault(history_id, [])
        if step.id not in step_ids:
            step_ids.append(step.id)
        self._history_steps[step.id] = step.copy()

    async def update_history_step(self, step_id: str, updates: dict[str, Any]) -> HistoryRecord:
        step = self._history_steps.get(step_id)
        if step is None:
            raise history_not_found(step_id, what="History step")
        updated = apply_updates(step, updates, self._clock())
        self._history_steps[step_id] = updated
        return updated.copy()

    async def get_history_step(self, step_id: str) -> Optional[HistoryRecord]:
        step = self._history_steps.get(step_id)
        return step.copy() if step else None

    async def add_timeline_event(self, event: HistoryRecord) -> None:
        event.require_kind(HistoryKind.TIMELINE)
        self._timeline_events[event.id] = event.copy()

    async def get_all_history_entries_by_agent(self, agent_id: str) -> list[HistoryEntry]:
        entries = [e for e in self._history_entries.values() if e.agent_id == agent_id]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return [self._assemble(entry) for entry in entries]

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def get_stats(self) -> dict[str, int]:
        total_messages = sum(
            len(bucket) for buckets in self._messages.values() for bucket in buckets.values()
        )
        return {
            "total_conversations": len(self._conversations),
            "total_users": len(self._messages),
            "total_messages": total_messages,
        }

    def clear(self) -> None:
        self._messages.clear()
        self._conversations.clear()
        self._user_working_memory.clear()
        self._history_entries.clear()
        self._history_steps.clear()
        self._entry_steps.clear()
        self._timeline_events.clear()
