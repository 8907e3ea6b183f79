"""Agent history records: entries, steps and timeline events.

Every record shares one envelope (id, kind, timestamp, updated_at) and
carries a payload dataclass specific to its kind:

    history.entry     -> EntryPayload     one agent run
    history.step      -> StepPayload      a step inside a run
    history.timeline  -> TimelinePayload  a timeline event inside a run

Steps and timeline events point at their entry through ``history_id``.
Storage adapters return entries as HistoryEntry views with their steps
(append order) and timeline events (oldest first) attached.
"""

import copy
import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from recollect.memory.types import utcnow


class HistoryKind(Enum):
    ENTRY = "history.entry"
    STEP = "history.step"
    TIMELINE = "history.timeline"


@dataclass
class EntryPayload:
    """One agent run.

    Attributes:
        agent_id: Agent that produced the run
        input: Input handed to the agent
        output: Final output, if any
        status: Run status ("working", "completed", "error", ...)
        end_time: When the run finished
        usage: Token usage reported by the model
        metadata: Opaque key/value metadata
    """
    agent_id: str
    input: Any = None
    output: Any = None
    status: str = "working"
    end_time: Optional[datetime] = None
    usage: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepPayload:
    history_id: str
    agent_id: str
    type: str
    name: Optional[str] = None
    content: Any = None
    arguments: Optional[dict[str, Any]] = None


@dataclass
class TimelinePayload:
    history_id: str
    agent_id: str
    name: str
    type: str
    status: str = "idle"
    input: Any = None
    output: Any = None
    end_time: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    trace_id: Optional[str] = None


HistoryPayload = Union[EntryPayload, StepPayload, TimelinePayload]

_PAYLOAD_KINDS: dict[type, HistoryKind] = {
    EntryPayload: HistoryKind.ENTRY,
    StepPayload: HistoryKind.STEP,
    TimelinePayload: HistoryKind.TIMELINE,
}
_KIND_PAYLOADS = {kind: payload_type for payload_type, kind in _PAYLOAD_KINDS.items()}

# Payload fields an update may never change
_IMMUTABLE_PAYLOAD_FIELDS = frozenset({"agent_id", "history_id"})


@dataclass
class HistoryRecord:
    """Envelope of a history entry, step or timeline event."""
    kind: HistoryKind
    payload: HistoryPayload
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        expected = _PAYLOAD_KINDS.get(type(self.payload))
        if expected is not self.kind:
            raise ValueError(
                f"Payload {type(self.payload).__name__} does not match history kind {self.kind.value}"
            )

    @classmethod
    def of(
        cls,
        payload: HistoryPayload,
        id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "HistoryRecord":
        """Wrap a payload in an envelope of the matching kind."""
        record = cls(kind=_PAYLOAD_KINDS[type(payload)], payload=payload)
        if id is not None:
            record.id = id
        if timestamp is not None:
            record.timestamp = timestamp
        return record

    @property
    def agent_id(self) -> str:
        return self.payload.agent_id

    @property
    def history_id(self) -> Optional[str]:
        """Owning entry id; None for entries themselves."""
        return getattr(self.payload, "history_id", None)

    def copy(self) -> "HistoryRecord":
        return copy.deepcopy(self)

    def require_kind(self, kind: HistoryKind) -> None:
        if self.kind is not kind:
            raise ValueError(f"Expected a {kind.value} record, got {self.kind.value}")


@dataclass
class HistoryEntry:
    """An entry record with its steps and timeline events attached."""
    record: HistoryRecord
    steps: list[HistoryRecord] = field(default_factory=list)
    events: list[HistoryRecord] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def payload(self) -> EntryPayload:
        assert isinstance(self.record.payload, EntryPayload)
        return self.record.payload


def apply_updates(record: HistoryRecord, updates: dict[str, Any], now: datetime) -> HistoryRecord:
    """Return a copy of ``record`` with payload fields merged in.

    agent_id and history_id are silently kept; updated_at is set to ``now``.

    Raises:
        ValueError: If a key is not a payload field
    """
    updated = record.copy()
    names = {f.name for f in dataclasses.fields(updated.payload)}
    for key, value in updates.items():
        if key in _IMMUTABLE_PAYLOAD_FIELDS:
            continue
        if key not in names:
            raise ValueError(f"Unknown {record.kind.value} field '{key}'")
        setattr(updated.payload, key, copy.deepcopy(value))
    updated.updated_at = now
    return updated


def payload_to_dict(payload: HistoryPayload) -> dict[str, Any]:
    """JSON-safe dict of a payload; datetimes become ISO strings."""
    data = dataclasses.asdict(payload)
    end_time = data.get("end_time")
    if isinstance(end_time, datetime):
        data["end_time"] = end_time.isoformat()
    return data


def payload_from_dict(kind: HistoryKind, data: dict[str, Any]) -> HistoryPayload:
    data = dict(data)
    if isinstance(data.get("end_time"), str):
        data["end_time"] = datetime.fromisoformat(data["end_time"])
    return _KIND_PAYLOADS[kind](**data)
