"""Typed events describing memory operations.

Each event shares one envelope (id, kind, timestamp) and carries a payload
dataclass specific to its kind:

    memory.read    -> ReadPayload
    memory.write   -> WritePayload
    memory.clear   -> ClearPayload
    memory.search  -> SearchPayload
    memory.error   -> ErrorPayload
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union

from recollect.memory.types import utcnow


class EventKind(Enum):
    READ = "memory.read"
    WRITE = "memory.write"
    CLEAR = "memory.clear"
    SEARCH = "memory.search"
    ERROR = "memory.error"


@dataclass
class ReadPayload:
    user_id: str
    conversation_id: str
    message_count: int
    semantic: bool = False


@dataclass
class WritePayload:
    user_id: str
    conversation_id: str
    message_id: str
    role: str


@dataclass
class ClearPayload:
    user_id: str
    conversation_id: Optional[str]


@dataclass
class SearchPayload:
    user_id: str
    conversation_id: str
    query: str
    result_count: int


@dataclass
class ErrorPayload:
    operation: str
    error: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None


EventPayload = Union[ReadPayload, WritePayload, ClearPayload, SearchPayload, ErrorPayload]

_PAYLOAD_KINDS: dict[type, EventKind] = {
    ReadPayload: EventKind.READ,
    WritePayload: EventKind.WRITE,
    ClearPayload: EventKind.CLEAR,
    SearchPayload: EventKind.SEARCH,
    ErrorPayload: EventKind.ERROR,
}


@dataclass
class MemoryEvent:
    """Envelope of a memory operation event."""
    kind: EventKind
    payload: EventPayload
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        expected = _PAYLOAD_KINDS.get(type(self.payload))
        if expected is not self.kind:
            raise ValueError(
                f"Payload {type(self.payload).__name__} does not match event kind {self.kind.value}"
            )

    @classmethod
    def of(cls, payload: EventPayload) -> "MemoryEvent":
        """Wrap a payload in an envelope of the matching kind."""
        return cls(kind=_PAYLOAD_KINDS[type(payload)], payload=payload)


EventHandler = Callable[[MemoryEvent], None]
