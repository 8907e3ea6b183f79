"""Memory module for the recollect system.

This module provides the core data types, agent history records, the
embedding cache, vector math, and the Memory / MemoryManager classes that
assemble conversation context.
"""

from recollect.memory.cache import BatchEmbeddingCache, EmbeddingCache
from recollect.memory.history import (
    EntryPayload,
    HistoryEntry,
    HistoryKind,
    HistoryRecord,
    StepPayload,
    TimelinePayload,
)
from recollect.memory.types import (
    Conversation,
    ConversationQueryOptions,
    CreateConversationInput,
    GetMessagesOptions,
    MergeStrategy,
    Message,
    SearchResult,
    VectorItem,
    WorkingMemoryScope,
)
from recollect.memory.working import WorkingMemoryConfig
from recollect.memory.memory import Memory, merge_messages
from recollect.memory.manager import MemoryManager, PreparedContext

__all__ = [
    "BatchEmbeddingCache",
    "Conversation",
    "ConversationQueryOptions",
    "CreateConversationInput",
    "EmbeddingCache",
    "EntryPayload",
    "GetMessagesOptions",
    "HistoryEntry",
    "HistoryKind",
    "HistoryRecord",
    "Memory",
    "MemoryManager",
    "MergeStrategy",
    "Message",
    "PreparedContext",
    "SearchResult",
    "StepPayload",
    "TimelinePayload",
    "VectorItem",
    "WorkingMemoryConfig",
    "WorkingMemoryScope",
    "merge_messages",
]
