"""Turn-level orchestration of conversation memory.

MemoryManager is what an agent talks to once per turn:
- prepare_conversation_context loads recent history (the floor guarantee)
  and queues the new input for a background save
- save_message / get_messages / search_messages / clear_messages wrap
  Memory with logging and typed events
- working memory calls are proxied to Memory

Background saves go through a BackgroundQueue, so a slow or failing store
never blocks the foreground read path.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from recollect.config import RecollectSettings
from recollect.errors import ErrorKind, RecollectError
from recollect.events import (
    ClearPayload,
    ErrorPayload,
    EventHandler,
    EventPayload,
    MemoryEvent,
    ReadPayload,
    SearchPayload,
    WritePayload,
)
from recollect.memory.memory import Memory
from recollect.memory.types import (
    CreateConversationInput,
    GetMessagesOptions,
    MergeStrategy,
    Message,
    utcnow,
)
from recollect.memory.working import WorkingMemoryContent
from recollect.queue import BackgroundQueue, TaskResult
from recollect.storage.in_memory import InMemoryStorageAdapter

logger = logging.getLogger(__name__)

ConversationInput = Union[str, list[Message]]


@dataclass
class PreparedContext:
    """Result of prepare_conversation_context.

    Attributes:
        messages: Recent history to feed into generation
        conversation_id: Given or freshly generated conversation id
        pending: Completion of the queued input save, None when nothing was queued
    """
    messages: list[Message]
    conversation_id: str
    pending: Optional["asyncio.Future[TaskResult]"] = field(default=None, repr=False)


class MemoryManager:
    """Memory orchestration for one resource (agent).

    Args:
        resource_id: Resource new conversations are attached to
        memory: Memory to use; None creates an in-memory one, False disables memory
        queue: Background queue for input saves (default: 10 concurrent, 30s, 5 retries)
        on_event: Callback receiving a MemoryEvent per operation
    """

    def __init__(
        self,
        resource_id: str,
        memory: Union[Memory, None, bool] = None,
        queue: Optional[BackgroundQueue] = None,
        on_event: Optional[EventHandler] = None,
    ):
        self.resource_id = resource_id
        self.on_event = on_event
        self.queue = queue or BackgroundQueue(
            max_concurrency=10, default_timeout=30.0, default_retries=5
        )

        self._memory: Optional[Memory]
        if memory is False:
            self._memory = None
        elif isinstance(memory, Memory):
            self._memory = memory
        else:
            self._memory = Memory(storage=InMemoryStorageAdapter())

    @classmethod
    def from_settings(
        cls,
        resource_id: str,
        settings: RecollectSettings,
        on_event: Optional[EventHandler] = None,
    ) -> "MemoryManager":
        """Create a manager whose Memory and queue follow configuration."""
        queue = BackgroundQueue(
            max_concurrency=settings.queue_max_concurrency,
            default_timeout=settings.queue_timeout,
            default_retries=settings.queue_retries,
        )
        return cls(
            resource_id,
            memory=Memory.from_settings(settings),
            queue=queue,
            on_event=on_event,
        )

    def _emit(self, payload: EventPayload) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(MemoryEvent.of(payload))
        except Exception as e:
            logger.warning(f"Memory event handler failed: {e}")

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def save_message(
        self,
        message: Message,
        user_id: Optional[str],
        conversation_id: Optional[str],
    ) -> None:
        """Persist one message, creating its conversation if needed.

        Failures are logged and reported as memory.error events; they never
        propagate to the caller.
        """
        if self._memory is None or not user_id or not conversation_id:
            return

        try:
            await self._ensure_conversation_exists(user_id, conversation_id)
            await self._memory.save_message_with_context(
                message, user_id, conversation_id, logger=logger
            )
        except Exception as e:
            logger.error(f"Memory write failed: {e}")
            self._emit(ErrorPayload("write", str(e), user_id, conversation_id))
            return

        logger.debug(f"Memory write successful (message {message.id})")
        self._emit(WritePayload(user_id, conversation_id, message.id, message.role))

    async def get_messages(
        self,
        user_id: Optional[str],
        conversation_id: Optional[str],
        limit: Optional[int] = None,
        use_semantic_search: bool = False,
        current_query: Optional[str] = None,
        semantic_limit: Optional[int] = None,
        semantic_threshold: Optional[float] = None,
        merge_strategy: MergeStrategy = MergeStrategy.APPEND,
    ) -> list[Message]:
        """Recent messages, merged with semantic hits when requested.

        Raises:
            RecollectError: If the recent-message fetch fails
        """
        if self._memory is None or not user_id or not conversation_id:
            return []

        semantic = use_semantic_search and bool(current_query)
        try:
            if semantic:
                messages = await self._memory.get_messages_with_context(
                    user_id,
                    conversation_id,
                    limit=limit,
                    use_semantic_search=True,
                    current_query=current_query,
                    semantic_limit=semantic_limit if semantic_limit is not None else limit,
                    semantic_threshold=semantic_threshold,
                    merge_strategy=merge_strategy,
                    logger=logger,
                )
            else:
                messages = await self._memory.get_messages(
                    user_id, conversation_id, GetMessagesOptions(limit=limit)
                )
        except Exception as e:
            logger.error(f"Memory read failed: {e}")
            self._emit(ErrorPayload("read", str(e), user_id, conversation_id))
            raise

        logger.debug(f"Memory read successful ({len(messages)} records)")
        self._emit(ReadPayload(user_id, conversation_id, len(messages), semantic))
        return messages

    async def search_messages(
        self,
        query: str,
        user_id: Optional[str],
        conversation_id: Optional[str],
        limit: Optional[int] = None,
    ) -> list[Message]:
        """Messages related to query, best semantic hits first.

        Without vector support this is the most recent messages.
        """
        if self._memory is None or not user_id or not conversation_id:
            return []

        try:
            if self._memory.has_vector_support() and query:
                messages = await self._memory.get_messages_with_semantic_search(
                    user_id,
                    conversation_id,
                    query,
                    limit=limit,
                    semantic_limit=limit,
                    merge_strategy=MergeStrategy.PREPEND,
                    logger=logger,
                )
                if limit is not None:
                    messages = messages[:limit]
            else:
                messages = await self._memory.get_messages(
                    user_id, conversation_id, GetMessagesOptions(limit=limit)
                )
        except Exception as e:
            logger.error(f"Memory search failed: {e}")
            self._emit(ErrorPayload("search", str(e), user_id, conversation_id))
            raise

        logger.debug(f"Memory search successful ({len(messages)} records)")
        self._emit(SearchPayload(user_id, conversation_id, query, len(messages)))
        return messages

    async def clear_messages(
        self, user_id: Optional[str], conversation_id: Optional[str] = None
    ) -> None:
        """Clear one conversation's messages, or all of the user's.

        Conversations and working memory are kept. Failures are logged.
        """
        if self._memory is None or not user_id:
            return

        try:
            await self._memory.clear_messages(user_id, conversation_id)
        except Exception as e:
            logger.error(f"Memory clear failed: {e}")
            self._emit(ErrorPayload("clear", str(e), user_id, conversation_id))
            return

        logger.debug("Memory clear successful")
        self._emit(ClearPayload(user_id, conversation_id))

    # =========================================================================
    # Turn preparation
    # =========================================================================

    async def prepare_conversation_context(
        self,
        input: ConversationInput,
        user_id: Optional[str],
        conversation_id: Optional[str] = None,
        context_limit: int = 10,
    ) -> PreparedContext:
        """Load recent history and queue the input for a background save.

        Args:
            input: New user text, or messages to persist
            user_id: Owner of the conversation
            conversation_id: Existing conversation id (default: new uuid4)
            context_limit: Recent messages to load; 0 skips loading and saving

        Returns:
            PreparedContext with the history loaded before the input is saved

        Raises:
            RecollectError: If loading recent messages fails
        """
        conversation_id = conversation_id or str(uuid.uuid4())

        if context_limit == 0 or self._memory is None or not user_id:
            return PreparedContext(messages=[], conversation_id=conversation_id)

        messages = await self._memory.get_messages(
            user_id, conversation_id, GetMessagesOptions(limit=context_limit)
        )
        logger.debug(f"Loaded {len(messages)} context message(s) for {conversation_id}")
        self._emit(ReadPayload(user_id, conversation_id, len(messages)))

        pending = self.queue_save_input(input, user_id, conversation_id)
        return PreparedContext(messages=messages, conversation_id=conversation_id, pending=pending)

    def queue_save_input(
        self, input: ConversationInput, user_id: str, conversation_id: str
    ) -> Optional["asyncio.Future[TaskResult]"]:
        """Enqueue "ensure conversation, then save input" as one background task."""
        if self._memory is None:
            return None

        async def operation() -> None:
            await self._ensure_conversation_exists(user_id, conversation_id)
            await self._save_input(input, user_id, conversation_id)

        return self.queue.enqueue(
            operation,
            task_id=f"conversation-and-input-{conversation_id}-{int(time.time() * 1000)}",
        )

    async def _ensure_conversation_exists(self, user_id: str, conversation_id: str) -> None:
        """Create the conversation, or bump its updated_at when it already exists."""
        assert self._memory is not None
        existing = await self._memory.get_conversation(conversation_id)
        if existing is not None:
            await self._memory.update_conversation(conversation_id, {})
            return

        try:
            await self._memory.create_conversation(
                CreateConversationInput(
                    id=conversation_id,
                    user_id=user_id,
                    resource_id=self.resource_id,
                    title=f"New Chat {utcnow().isoformat()}",
                )
            )
            logger.debug(f"Created conversation {conversation_id}")
        except RecollectError as e:
            if e.kind is not ErrorKind.CONVERSATION_ALREADY_EXISTS:
                raise
            # Another writer created it first
            logger.debug(f"Conversation {conversation_id} already exists")
            await self._memory.update_conversation(conversation_id, {})

    async def _save_input(
        self, input: ConversationInput, user_id: str, conversation_id: str
    ) -> None:
        assert self._memory is not None
        if isinstance(input, str):
            messages = [Message.from_text(str(uuid.uuid4()), "user", input)]
        else:
            messages = list(input)

        if len(messages) == 1:
            await self._memory.save_message_with_context(
                messages[0], user_id, conversation_id, logger=logger
            )
        elif messages:
            await self._memory.add_messages(messages, user_id, conversation_id, logger=logger)

        for message in messages:
            self._emit(WritePayload(user_id, conversation_id, message.id, message.role))

    # =========================================================================
    # Working Memory Proxies
    # =========================================================================

    async def get_working_memory(
        self, conversation_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Optional[str]:
        if self._memory is None:
            return None
        return await self._memory.get_working_memory(conversation_id=conversation_id, user_id=user_id)

    async def update_working_memory(
        self,
        content: WorkingMemoryContent,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """Raises RecollectError(WORKING_MEMORY_DISABLED) when memory is off."""
        if self._memory is None:
            raise RecollectError(ErrorKind.WORKING_MEMORY_DISABLED, "Memory is not configured")
        await self._memory.update_working_memory(
            content, conversation_id=conversation_id, user_id=user_id
        )

    async def clear_working_memory(
        self, conversation_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> None:
        if self._memory is None:
            return
        await self._memory.clear_working_memory(conversation_id=conversation_id, user_id=user_id)

    def has_working_memory_support(self) -> bool:
        return self._memory is not None and self._memory.has_working_memory_support()

    def get_working_memory_config(self) -> dict[str, Any]:
        if self._memory is None:
            return {"template": None, "schema": None, "format": None}
        return {
            "template": self._memory.get_working_memory_template(),
            "schema": self._memory.get_working_memory_schema(),
            "format": self._memory.get_working_memory_format(),
        }

    async def get_working_memory_instructions(
        self, conversation_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Optional[str]:
        if self._memory is None:
            return None
        return await self._memory.get_working_memory_instructions(
            conversation_id=conversation_id, user_id=user_id
        )

    # =========================================================================
    # State
    # =========================================================================

    def has_conversation_memory(self) -> bool:
        return self._memory is not None

    def get_memory(self) -> Optional[Memory]:
        return self._memory

    def get_memory_state(self) -> dict[str, Any]:
        """Snapshot describing the configured memory."""
        if self._memory is None:
            return {
                "type": "NoMemory",
                "resource_id": self.resource_id,
                "available": False,
                "status": "idle",
            }

        return {
            "type": type(self._memory.get_storage_adapter()).__name__,
            "resource_id": self.resource_id,
            "available": True,
            "status": "busy" if self.queue.active_count or self.queue.pending_count else "idle",
            "vector_support": self._memory.has_vector_support(),
            "working_memory": self._memory.has_working_memory_support(),
        }

    async def shutdown(self) -> None:
        """Wait for queued background saves to finish."""
        await self.queue.join()
        logger.debug("Memory manager shutdown complete")
