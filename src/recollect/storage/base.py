"""Adapter contracts for conversation and vector storage.

Every backing implementation (in-memory, SQLite, ChromaDB) satisfies one of
these contracts exactly, including most-recent-N slicing in get_messages,
cascade deletion of messages when a conversation is deleted and agent
history records (entries, steps, timeline events).
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from recollect.memory.history import HistoryEntry, HistoryRecord
from recollect.memory.types import (
    Conversation,
    ConversationQueryOptions,
    CreateConversationInput,
    GetMessagesOptions,
    Message,
    SearchResult,
    VectorItem,
    WorkingMemoryScope,
)

# Key under which working memory is kept in conversation/user metadata
WORKING_MEMORY_KEY = "working_memory"

DEFAULT_STORAGE_LIMIT = 100


class StorageAdapter(ABC):
    """Conversation CRUD plus bounded per-(user, conversation) message logs."""

    storage_limit: int = DEFAULT_STORAGE_LIMIT

    # Message operations

    @abstractmethod
    async def add_message(self, message: Message, user_id: str, conversation_id: str) -> None:
        """Append a message, then evict the oldest entries beyond storage_limit."""

    async def add_messages(
        self, messages: list[Message], user_id: str, conversation_id: str
    ) -> None:
        """Append messages one by one; eviction applies after every append."""
        for message in messages:
            await self.add_message(message, user_id, conversation_id)

    @abstractmethod
    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        options: Optional[GetMessagesOptions] = None,
    ) -> list[Message]:
        """Filter by roles and time bounds, sort oldest first, keep the last ``limit``."""

    @abstractmethod
    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 100, offset: int = 0
    ) -> list[Message]:
        """Messages of a conversation across every user, oldest first.

        Args:
            conversation_id: Conversation to read
            limit: Page size; zero or negative returns everything after offset
            offset: Messages to skip from the oldest end
        """

    @abstractmethod
    async def clear_messages(self, user_id: str, conversation_id: Optional[str] = None) -> None:
        """Clear one conversation bucket, or every bucket of the user."""

    # Conversation operations

    @abstractmethod
    async def create_conversation(self, input: CreateConversationInput) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def query_conversations(self, options: ConversationQueryOptions) -> list[Conversation]:
        ...

    async def get_conversations(self, resource_id: str) -> list[Conversation]:
        return await self.query_conversations(ConversationQueryOptions(resource_id=resource_id))

    async def get_conversations_by_user_id(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[Conversation]:
        return await self.query_conversations(
            ConversationQueryOptions(user_id=user_id, limit=limit, offset=offset)
        )

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, updates: dict[str, Any]
    ) -> Conversation:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    # Working memory

    @abstractmethod
    async def get_working_memory(
        self,
        scope: WorkingMemoryScope,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        ...

    @abstractmethod
    async def set_working_memory(
        self,
        scope: WorkingMemoryScope,
        content: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def delete_working_memory(
        self,
        scope: WorkingMemoryScope,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        ...

    # Agent history

    @abstractmethod
    async def add_history_entry(self, entry: HistoryRecord) -> None:
        """Insert or replace an entry record."""

    @abstractmethod
    async def update_history_entry(self, entry_id: str, updates: dict[str, Any]) -> HistoryRecord:
        """Merge payload fields into an entry.

        Raises:
            RecollectError: HISTORY_NOT_FOUND if the entry is unknown
        """

    @abstractmethod
    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        """Entry with its steps (append order) and timeline events (oldest first)."""

    @abstractmethod
    async def add_history_step(self, step: HistoryRecord) -> None:
        """Insert or replace a step of an existing entry.

        Raises:
            RecollectError: HISTORY_NOT_FOUND if the owning entry is unknown
        """

    @abstractmethod
    async def update_history_step(self, step_id: str, updates: dict[str, Any]) -> HistoryRecord:
        ...

    @abstractmethod
    async def get_history_step(self, step_id: str) -> Optional[HistoryRecord]:
        ...

    @abstractmethod
    async def add_timeline_event(self, event: HistoryRecord) -> None:
        """Insert or replace a timeline event; the owning entry need not exist yet."""

    @abstractmethod
    async def get_all_history_entries_by_agent(self, agent_id: str) -> list[HistoryEntry]:
        """Entries of one agent, newest first."""


class VectorAdapter(ABC):
    """Keyed vector storage with similarity search."""

    @abstractmethod
    async def store(
        self,
        id: str,
        vector: list[float],
        metadata: Optional[dict[str, Any]] = None,
        content: Optional[str] = None,
    ) -> None:
        ...

    async def store_batch(self, items: list[VectorItem]) -> None:
        """Store items one at a time; not atomic."""
        for item in items:
            await self.store(item.id, item.vector, item.metadata, item.content)

    @abstractmethod
    async def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchResult]:
        ...

    @abstractmethod
    async def delete(self, id: str) -> None:
        ...

    async def delete_batch(self, ids: list[str]) -> None:
        for vector_id in ids:
            await self.delete(vector_id)

    @abstractmethod
    async def ids_matching(self, filter: dict[str, Any]) -> list[str]:
        """Ids of every stored vector whose metadata matches the filter."""

    @abstractmethod
    async def clear(self) -> None:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def get(self, id: str) -> Optional[VectorItem]:
        ...


def matches_filter(
    metadata: Optional[dict[str, Any]], filter: Optional[dict[str, Any]]
) -> bool:
    """Exact key/value match on every filter key; missing metadata never matches."""
    if not filter:
        return True
    if not metadata:
        return False
    return all(key in metadata and metadata[key] == value for key, value in filter.items())
