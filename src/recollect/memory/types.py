"""Core data types for the memory system.

This module defines the data structures used throughout recollect:
- Message / StoredMessage: chat messages made of structured content parts
- Conversation / CreateConversationInput: conversation records
- VectorItem / SearchResult: entries and hits of a vector store
- GetMessagesOptions / ConversationQueryOptions: query parameters
- MergeStrategy / WorkingMemoryScope: enums for context assembly
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

VALID_ROLES = frozenset({"user", "assistant", "system"})

# Orderings accepted by query_conversations
CONVERSATION_ORDER_FIELDS = ("created_at", "updated_at", "title")


def utcnow() -> datetime:
    """Default clock for storage adapters (timezone-aware UTC)."""
    return datetime.now(timezone.utc)


class MergeStrategy(Enum):
    """How semantic hits are combined with recent messages.

    - PREPEND: semantic hits first, then recent messages
    - APPEND: recent messages first, then semantic hits
    - INTERLEAVE: alternate one recent, one semantic hit
    """
    PREPEND = "prepend"
    APPEND = "append"
    INTERLEAVE = "interleave"


class WorkingMemoryScope(Enum):
    """Where working memory is attached."""
    CONVERSATION = "conversation"
    USER = "user"


@dataclass
class Message:
    """A chat message made of structured content parts.

    Attributes:
        id: Unique message identifier
        role: One of 'user', 'assistant', 'system'
        parts: Content parts; text parts look like {"type": "text", "text": "..."}
        metadata: Optional caller-defined metadata

    Raises:
        ValueError: If role is not a known role
    """
    id: str
    role: str
    parts: list[dict[str, Any]] = field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.role not in VALID_ROLES:
            raise ValueError(
                f"Invalid role '{self.role}'. Must be one of {sorted(VALID_ROLES)}"
            )

    @classmethod
    def from_text(cls, message_id: str, role: str, text: str) -> "Message":
        """Build a message with a single text part."""
        return cls(id=message_id, role=role, parts=[{"type": "text", "text": text}])

    def text(self) -> str:
        """Concatenate the text of all text parts.

        Returns:
            Space-joined text of every part of type "text", stripped.
            Empty string when the message has no text parts.
        """
        texts = [
            str(part.get("text", ""))
            for part in self.parts
            if part.get("type") == "text" and part.get("text")
        ]
        return " ".join(texts).strip()

    def copy(self) -> "Message":
        """Deep copy of this message."""
        return copy.deepcopy(self)


@dataclass
class StoredMessage:
    """A message plus the storage metadata that is never handed to callers."""
    message: Message
    user_id: str
    conversation_id: str
    created_at: datetime

    def to_message(self) -> Message:
        return self.message.copy()


@dataclass
class Conversation:
    """A conversation record.

    Attributes:
        id: Globally unique identifier
        user_id: Owner of the conversation
        resource_id: Resource (agent) the conversation belongs to
        title: Display title
        metadata: Opaque key/value metadata
        created_at: Creation time, immutable
        updated_at: Last mutation time, never decreases
    """
    id: str
    user_id: str
    resource_id: str
    title: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "Conversation":
        return copy.deepcopy(self)


@dataclass
class CreateConversationInput:
    """Input for creating a conversation."""
    id: str
    user_id: str
    resource_id: str
    title: str = "Conversation"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GetMessagesOptions:
    """Filters for message retrieval.

    Attributes:
        limit: Return at most this many of the most recent matching messages
        before: Only messages created strictly before this time
        after: Only messages created strictly after this time
        roles: Only messages with one of these roles
    """
    limit: Optional[int] = None
    before: Optional[datetime] = None
    after: Optional[datetime] = None
    roles: Optional[list[str]] = None


@dataclass
class ConversationQueryOptions:
    """Filtering, ordering and pagination for query_conversations."""
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    limit: int = 50
    offset: int = 0
    order_by: str = "created_at"
    order_direction: str = "DESC"

    def __post_init__(self) -> None:
        if self.order_by not in CONVERSATION_ORDER_FIELDS:
            raise ValueError(
                f"order_by must be one of {CONVERSATION_ORDER_FIELDS}, got '{self.order_by}'"
            )
        direction = self.order_direction.upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError(
                f"order_direction must be 'ASC' or 'DESC', got '{self.order_direction}'"
            )
        self.order_direction = direction


@dataclass
class VectorItem:
    """An entry of a vector store."""
    id: str
    vector: list[float]
    metadata: Optional[dict[str, Any]] = None
    content: Optional[str] = None


@dataclass
class SearchResult:
    """A vector search hit.

    Attributes:
        score: Similarity remapped to [0, 1], higher is better
        distance: 1 - cosine similarity
    """
    id: str
    vector: list[float]
    score: float
    distance: float
    metadata: Optional[dict[str, Any]] = None
    content: Optional[str] = None
