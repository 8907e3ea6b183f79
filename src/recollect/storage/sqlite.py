"""SQLite storage layer for conversations, messages and working memory.

This module provides a SQLite-backed StorageAdapter with the same contract
as the in-memory adapter:
- Conversation CRUD with cascade deletion of messages across all users
- Bounded per-(user, conversation) message logs with oldest-first eviction
- Most-recent-N retrieval after role and time filtering
- User- and conversation-scoped working memory
- Agent history entries, steps and timeline events in one table keyed by kind

Timestamps are stored as REAL epoch seconds. Messages also carry an
autoincrement sequence so equal timestamps keep append order.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from recollect.errors import (
    ErrorKind,
    RecollectError,
    conversation_already_exists,
    conversation_not_found,
    history_not_found,
)
from recollect.memory.history import (
    HistoryEntry,
    HistoryKind,
    HistoryRecord,
    apply_updates,
    payload_from_dict,
    payload_to_dict,
)
from recollect.memory.types import (
    Conversation,
    ConversationQueryOptions,
    CreateConversationInput,
    GetMessagesOptions,
    Message,
    WorkingMemoryScope,
    utcnow,
)
from recollect.storage.base import DEFAULT_STORAGE_LIMIT, WORKING_MEMORY_KEY, StorageAdapter

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        title TEXT NOT NULL,
        metadata TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_resource ON conversations(resource_id)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        parts TEXT NOT NULL,
        metadata TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_bucket
    ON messages(user_id, conversation_id, created_at)
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        working_memory TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS history (
        kind TEXT NOT NULL,
        id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        history_id TEXT,
        payload TEXT NOT NULL,
        timestamp REAL NOT NULL,
        updated_at REAL,
        PRIMARY KEY (kind, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_agent ON history(kind, agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_parent ON history(kind, history_id)",
]

_ORDER_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "title": "title",
}

_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "updated_at"})
_UPDATABLE_FIELDS = frozenset({"user_id", "resource_id", "title", "metadata"})


def _to_timestamp(value: datetime) -> float:
    return value.timestamp()


def _from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteStorageAdapter(StorageAdapter):
    """SQLite-backed conversation and message storage.

    Args:
        db_path: Path to SQLite database file.
                 Defaults to ~/.recollect/recollect.db
        ephemeral: If True, use in-memory storage for testing (default: False)
        storage_limit: Maximum messages kept per (user, conversation) (default: 100)
        clock: Time source for created_at/updated_at (default: UTC now)

    Raises:
        RecollectError: STORAGE_FAILURE if database initialization fails
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ephemeral: bool = False,
        storage_limit: int = DEFAULT_STORAGE_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if storage_limit < 1:
            raise ValueError(f"storage_limit must be at least 1, got {storage_limit}")

        self.ephemeral = ephemeral
        self.storage_limit = storage_limit
        self._clock = clock or utcnow

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".recollect" / "recollect.db"

        try:
            if ephemeral:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                if self.db_path is not None:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)

            self._conn.row_factory = sqlite3.Row
            self._init_schema()

        except sqlite3.Error as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to initialize SQLite storage: {e}",
            ) from e

    def _init_schema(self) -> None:
        cursor = self._conn.cursor()
        for statement in _SCHEMA:
            cursor.execute(statement)
        self._conn.commit()

    def _failure(self, action: str, error: sqlite3.Error) -> RecollectError:
        self._conn.rollback()
        return RecollectError(ErrorKind.STORAGE_FAILURE, f"Failed to {action}: {error}")

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            resource_id=row["resource_id"],
            title=row["title"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_from_timestamp(row["created_at"]),
            updated_at=_from_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            role=row["role"],
            parts=json.loads(row["parts"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def add_message(self, message: Message, user_id: str, conversation_id: str) -> None:
        """Insert a message and trim its bucket to storage_limit.

        Raises:
            RecollectError: STORAGE_FAILURE if the write fails
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT INTO messages (id, user_id, conversation_id, role, parts, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    user_id,
                    conversation_id,
                    message.role,
                    json.dumps(message.parts),
                    json.dumps(message.metadata) if message.metadata else None,
                    _to_timestamp(self._clock()),
                ),
            )

            # Keep only the newest storage_limit rows of this bucket
            cursor.execute(
                """
                DELETE FROM messages WHERE seq IN (
                    SELECT seq FROM messages
                    WHERE user_id = ? AND conversation_id = ?
                    ORDER BY created_at DESC, seq DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (user_id, conversation_id, self.storage_limit),
            )
            evicted = cursor.rowcount
            self._conn.commit()

        except sqlite3.Error as e:
            raise self._failure("add message", e) from e

        if evicted > 0:
            logger.debug(
                f"Evicted {evicted} message(s) from {user_id}/{conversation_id} "
                f"(limit {self.storage_limit})"
            )

    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        options: Optional[GetMessagesOptions] = None,
    ) -> list[Message]:
        """Return the most recent matching messages, oldest first.

        Raises:
            RecollectError: STORAGE_FAILURE if the query fails
        """
        options = options or GetMessagesOptions()
        clauses = ["user_id = ?", "conversation_id = ?"]
        params: list[Any] = [user_id, conversation_id]

        if options.roles:
            clauses.append(f"role IN ({', '.join('?' for _ in options.roles)})")
            params.extend(options.roles)

        if options.before is not None:
            clauses.append("created_at < ?")
            params.append(_to_timestamp(options.before))

        if options.after is not None:
            clauses.append("created_at > ?")
            params.append(_to_timestamp(options.after))

        limit = options.limit if options.limit is not None else self.storage_limit
        if not limit or limit <= 0:
            limit = -1
        params.append(limit)

        try:
            cursor = self._conn.cursor()
            # Newest first with LIMIT takes the tail; reversed below to oldest first
            cursor.execute(
                f"""
                SELECT id, role, parts, metadata FROM messages
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, seq DESC
                LIMIT ?
                """,
                params,
            )
            rows = cursor.fetchall()

        except sqlite3.Error as e:
            raise self._failure("get messages", e) from e

        return [self._row_to_message(row) for row in reversed(rows)]

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 100, offset: int = 0
    ) -> list[Message]:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT id, role, parts, metadata FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, seq ASC
                LIMIT ? OFFSET ?
                """,
                (conversation_id, limit if limit > 0 else -1, max(offset, 0)),
            )
            rows = cursor.fetchall()

        except sqlite3.Error as e:
            raise self._failure("get conversation messages", e) from e

        return [self._row_to_message(row) for row in rows]

    async def clear_messages(self, user_id: str, conversation_id: Optional[str] = None) -> None:
        try:
            cursor = self._conn.cursor()
            if conversation_id is not None:
                cursor.execute(
                    "DELETE FROM messages WHERE user_id = ? AND conversation_id = ?",
                    (user_id, conversation_id),
                )
            else:
                cursor.execute("DELETE FROM messages WHERE user_id = ?", (user_id,))
            self._conn.commit()

        except sqlite3.Error as e:
            raise self._failure("clear messages", e) from e

    # =========================================================================
    # Conversation Operations
    # =========================================================================

    async def create_conversation(self, input: CreateConversationInput) -> Conversation:
        """Create a conversation.

        Raises:
            RecollectError: CONVERSATION_ALREADY_EXISTS if the id is taken,
                STORAGE_FAILURE on other database errors
        """
        now = self._clock()
        try:
            self._conn.execute(
                """
                INSERT INTO conversations (id, user_id, resource_id, title, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    input.id,
                    input.user_id,
                    input.resource_id,
                    input.title,
                    json.dumps(input.metadata or {}),
                    _to_timestamp(now),
                    _to_timestamp(now),
                ),
            )
            self._conn.commit()

        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise conversation_already_exists(input.id) from e
        except sqlite3.Error as e:
            raise self._failure("create conversation", e) from e

        conversation = await self.get_conversation(input.id)
        assert conversation is not None
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT id, user_id, resource_id, title, metadata, created_at, updated_at
                FROM conversations WHERE id = ?
                """,
                (conversation_id,),
            )
            row = cursor.fetchone()

        except sqlite3.Error as e:
            raise self._failure("get conversation", e) from e

        return self._row_to_conversation(row) if row is not None else None

    async def query_conversations(self, options: ConversationQueryOptions) -> list[Conversation]:
        clauses: list[str] = []
        params: list[Any] = []

        if options.user_id:
            clauses.append("user_id = ?")
            params.append(options.user_id)

        if options.resource_id:
            clauses.append("resource_id = ?")
            params.append(options.resource_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        column = _ORDER_COLUMNS[options.order_by]
        direction = "DESC" if options.order_direction == "DESC" else "ASC"
        params.extend([options.limit, max(options.offset, 0)])

        try:
            cursor = self._conn.cursor()
            cursor.execute(
                f"""
                SELECT id, user_id, resource_id, title, metadata, created_at, updated_at
                FROM conversations {where}
                ORDER BY {column} {direction}, rowid {direction}
                LIMIT ? OFFSET ?
                """,
                params,
            )
            rows = cursor.fetchall()

        except sqlite3.Error as e:
            raise self._failure("query conversations", e) from e

        return [self._row_to_conversation(row) for row in rows]

    async def update_conversation(
        self, conversation_id: str, updates: dict[str, Any]
    ) -> Conversation:
        """Merge updates into a conversation and bump updated_at.

        Raises:
            RecollectError: CONVERSATION_NOT_FOUND if the id is unknown
        """
        existing = await self.get_conversation(conversation_id)
        if existing is None:
            raise conversation_not_found(conversation_id)

        assignments: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            if key not in _UPDATABLE_FIELDS:
                raise ValueError(f"Unknown conversation field '{key}'")
            assignments.append(f"{key} = ?")
            params.append(json.dumps(value or {}) if key == "metadata" else value)

        updated_at = max(self._clock(), existing.updated_at)
        assignments.append("updated_at = ?")
        params.extend([_to_timestamp(updated_at), conversation_id])

        try:
            self._conn.execute(
                f"UPDATE conversations SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            self._conn.commit()

        except sqlite3.Error as e:
            raise self._failure("update conversation", e) from e

        conversation = await self.get_conversation(conversation_id)
        assert conversation is not None
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and its messages in every user bucket.

        Raises:
            RecollectError: CONVERSATION_NOT_FOUND if the id is unknown
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            if cursor.rowcount == 0:
                self._conn.rollback()
                raise conversation_not_found(conversation_id)
            cursor.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            self._conn.commit()

        except sqlite3.Error as e:
            raise self._failure("delete conversation", e) from e

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
            conversation = await self.get_conversation(conversation_id)
            value = conversation.metadata.get(WORKING_MEMORY_KEY) if conversation else None
            return value if isinstance(value, str) else None

        if scope is WorkingMemoryScope.USER and user_id:
            try:
                row = self._conn.execute(
                    "SELECT working_memory FROM users WHERE id = ?", (user_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise self._failure("get working memory", e) from e
            return row["working_memory"] if row is not None else None

        return None

    async def set_working_memory(
        self,
        scope: WorkingMemoryScope,
        content: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if scope is WorkingMemoryScope.CONVERSATION and conversation_id:
            conversation = await self.get_conversation(conversation_id)
            if conversation is None:
                raise conversation_not_found(conversation_id)
            metadata = dict(conversation.metadata)
            metadata[WORKING_MEMORY_KEY] = content
            await self.update_conversation(conversation_id, {"metadata": metadata})

        elif scope is WorkingMemoryScope.USER and user_id:
            now = _to_timestamp(self._clock())
            try:
                self._conn.execute(
                    """
                    INSERT INTO users (id, working_memory, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        working_memory = excluded.working_memory,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, content, now, now),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                raise self._failure("set working memory", e) from e

    async def delete_working_memory(
        self,
        scope: WorkingMemoryScope,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if scope is WorkingMemoryScope.CONVERSATION and conversation_id:
            conversation = await self.get_conversation(conversation_id)
            if conversation is not None and WORKING_MEMORY_KEY in conversation.metadata:
                metadata = dict(conversation.metadata)
                del metadata[WORKING_MEMORY_KEY]
                await self.update_conversation(conversation_id, {"metadata": metadata})

        elif scope is WorkingMemoryScope.USER and user_id:
            try:
                self._conn.execute(
                    "UPDATE users SET working_memory = NULL, updated_at = ? WHERE id = ?",
                    (_to_timestamp(self._clock()), user_id),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                raise self._failure("delete working memory", e) from e

    # =========================================================================
    # Agent History
    # =========================================================================

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> HistoryRecord:
        kind = HistoryKind(row["kind"])
        return HistoryRecord(
            kind=kind,
            payload=payload_from_dict(kind, json.loads(row["payload"])),
            id=row["id"],
            timestamp=_from_timestamp(row["timestamp"]),
            updated_at=_from_timestamp(row["updated_at"]) if row["updated_at"] is not None else None,
        )

    def _put_record(self, record: HistoryRecord, action: str) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO history (kind, id, agent_id, history_id, payload, timestamp, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(kind, id) DO UPDATE SET
                    agent_id = excluded.agent_id,
                    history_id = excluded.history_id,
                    payload = excluded.payload,
                    timestamp = excluded.timestamp,
                    updated_at = excluded.updated_at
                """,
                (
                    record.kind.value,
                    record.id,
                    record.agent_id,
                    record.history_id,
                    json.dumps(payload_to_dict(record.payload)),
                    _to_timestamp(record.timestamp),
                    _to_timestamp(record.updated_at) if record.updated_at else None,
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise self._failure(action, e) from e

    def _select_records(self, where: str, params: tuple, order: str = "rowid") -> list[HistoryRecord]:
        try:
            rows = self._conn.execute(
                f"""
                SELECT kind, id, payload, timestamp, updated_at FROM history
                WHERE {where} ORDER BY {order}
                """,
                params,
            ).fetchall()
        except sqlite3.Error as e:
            raise self._failure("read history", e) from e
        return [self._row_to_record(row) for row in rows]

    def _get_record(self, kind: HistoryKind, record_id: str) -> Optional[HistoryRecord]:
        records = self._select_records("kind = ? AND id = ?", (kind.value, record_id))
        return records[0] if records else None

    def _assemble(self, entry: HistoryRecord) -> HistoryEntry:
        steps = self._select_records(
            "kind = ? AND history_id = ?", (HistoryKind.STEP.value, entry.id)
        )
        events = self._select_records(
            "kind = ? AND history_id = ?",
            (HistoryKind.TIMELINE.value, entry.id),
            order="timestamp ASC, rowid ASC",
        )
        return HistoryEntry(record=entry, steps=steps, events=events)

    async def add_history_entry(self, entry: HistoryRecord) -> None:
        entry.require_kind(HistoryKind.ENTRY)
        self._put_record(entry, "add history entry")

    async def update_history_entry(self, entry_id: str, updates: dict[str, Any]) -> HistoryRecord:
        entry = self._get_record(HistoryKind.ENTRY, entry_id)
        if entry is None:
            raise history_not_found(entry_id)
        updated = apply_updates(entry, updates, self._clock())
        self._put_record(updated, "update history entry")
        return updated

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        entry = self._get_record(HistoryKind.ENTRY, entry_id)
        return self._assemble(entry) if entry else None

    async def add_history_step(self, step: HistoryRecord) -> None:
        step.require_kind(HistoryKind.STEP)
        history_id = step.history_id
        assert history_id is not None
        if self._get_record(HistoryKind.ENTRY, history_id) is None:
            raise history_not_found(history_id)
        self._put_record(step, "add history step")

    async def update_history_step(self, step_id: str, updates: dict[str, Any]) -> HistoryRecord:
        step = self._get_record(HistoryKind.STEP, step_id)
        if step is None:
            raise history_not_found(step_id, what="History step")
        updated = apply_updates(step, updates, self._clock())
        self._put_record(updated, "update history step")
        return updated

    async def get_history_step(self, step_id: str) -> Optional[HistoryRecord]:
        return self._get_record(HistoryKind.STEP, step_id)

    async def add_timeline_event(self, event: HistoryRecord) -> None:
        event.require_kind(HistoryKind.TIMELINE)
        self._put_record(event, "add timeline event")

    async def get_all_history_entries_by_agent(self, agent_id: str) -> list[HistoryEntry]:
        entries = self._select_records(
            "kind = ? AND agent_id = ?",
            (HistoryKind.ENTRY.value, agent_id),
            order="timestamp DESC, rowid DESC",
        )
        return [self._assemble(entry) for entry in entries]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> "SQLiteStorageAdapter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
