"""Memory: conversation storage with semantic recall and working memory.

Memory sits on top of three pluggable adapters:
- StorageAdapter (required): conversations, bounded message logs, working memory
- EmbeddingAdapter (optional): text -> vector
- VectorAdapter (optional): similarity search over message vectors

With both optional adapters configured, every stored text-bearing message
is embedded and indexed under the id ``msg_{conversation_id}_{message_id}``,
and get_messages_with_context can merge semantically similar history into
the most recent messages. Semantic recall is strictly additive: when it
fails the recent messages are returned on their own.
"""

import logging
from typing import Any, Optional

from recollect.config import RecollectSettings
from recollect.embedding.base import EmbeddingAdapter
from recollect.embedding.ollama import OllamaEmbeddingAdapter
from recollect.errors import ErrorKind, RecollectError, adapter_not_configured
from recollect.memory.cache import BatchEmbeddingCache
from recollect.memory.history import HistoryEntry, HistoryRecord
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
from recollect.memory.working import (
    WorkingMemoryConfig,
    WorkingMemoryContent,
    build_instructions,
    serialize_working_memory,
)
from recollect.storage.base import StorageAdapter, VectorAdapter
from recollect.storage.chromadb import ChromaVectorAdapter
from recollect.storage.in_memory import InMemoryStorageAdapter
from recollect.storage.sqlite import SQLiteStorageAdapter
from recollect.storage.vector import InMemoryVectorAdapter

logger = logging.getLogger(__name__)


def vector_id(conversation_id: str, message_id: str) -> str:
    """Vector store id of a message."""
    return f"msg_{conversation_id}_{message_id}"


def merge_messages(
    recent: list[Message],
    semantic: list[Message],
    strategy: MergeStrategy = MergeStrategy.APPEND,
) -> list[Message]:
    """Combine recent messages with semantic hits.

    Semantic hits already present in ``recent`` (or repeated among the hits)
    are dropped. The result is not re-sorted: strategy order is final.

    Args:
        recent: Most recent messages, oldest first
        semantic: Resolved semantic hits, best first
        strategy: PREPEND, APPEND or INTERLEAVE

    Returns:
        Merged message list
    """
    seen = {message.id for message in recent}
    extra: list[Message] = []
    for message in semantic:
        if message.id in seen:
            continue
        seen.add(message.id)
        extra.append(message)

    if strategy is MergeStrategy.PREPEND:
        return extra + recent

    if strategy is MergeStrategy.INTERLEAVE:
        merged: list[Message] = []
        for i in range(max(len(recent), len(extra))):
            if i < len(recent):
                merged.append(recent[i])
            if i < len(extra):
                merged.append(extra[i])
        return merged

    return recent + extra


class Memory:
    """Conversation memory with optional semantic search.

    Args:
        storage: Conversation and message storage
        embedding: Embedding adapter; needed for semantic features
        vector: Vector adapter; needed for semantic features
        enable_cache: Cache embeddings by text (default: False)
        cache_size: Maximum cached embeddings (default: 1000)
        cache_ttl: Cache entry lifetime in seconds (default: 3600)
        working_memory: Working memory options (default: disabled)

    Example:
        >>> memory = Memory(
        ...     storage=InMemoryStorageAdapter(),
        ...     embedding=OllamaEmbeddingAdapter(),
        ...     vector=InMemoryVectorAdapter(),
        ...     enable_cache=True,
        ... )
        >>> await memory.add_message(Message.from_text("m1", "user", "I have a dog"), "u1", "c1")
        >>> await memory.get_messages_with_context(
        ...     "u1", "c1", limit=5, use_semantic_search=True, current_query="pets"
        ... )
    """

    def __init__(
        self,
        storage: StorageAdapter,
        embedding: Optional[EmbeddingAdapter] = None,
        vector: Optional[VectorAdapter] = None,
        enable_cache: bool = False,
        cache_size: int = 1000,
        cache_ttl: float = 3600.0,
        working_memory: Optional[WorkingMemoryConfig] = None,
    ):
        self.storage = storage
        self.embedding = embedding
        self.vector = vector
        self.working_memory_config = working_memory
        self._cache: Optional[BatchEmbeddingCache] = (
            BatchEmbeddingCache(max_size=cache_size, ttl=cache_ttl) if enable_cache else None
        )

    @classmethod
    def from_settings(cls, settings: RecollectSettings) -> "Memory":
        """Build a Memory and its adapters from configuration.

        Args:
            settings: Loaded RecollectSettings

        Returns:
            Configured Memory instance
        """
        storage: StorageAdapter
        if settings.storage_backend == "sqlite":
            storage = SQLiteStorageAdapter(
                db_path=settings.get_sqlite_path(),
                storage_limit=settings.storage_limit,
            )
        else:
            storage = InMemoryStorageAdapter(storage_limit=settings.storage_limit)

        vector: Optional[VectorAdapter] = None
        if settings.vector_backend == "chroma":
            vector = ChromaVectorAdapter(
                db_path=settings.get_chroma_path(),
                collection_name=settings.collection_name,
            )
        elif settings.vector_backend == "memory":
            vector = InMemoryVectorAdapter()

        embedding: Optional[EmbeddingAdapter] = None
        if settings.embedding_provider == "ollama":
            embedding = OllamaEmbeddingAdapter(
                host=settings.ollama_host,
                model=settings.ollama_model,
                timeout=settings.ollama_timeout,
                max_batch_size=settings.embedding_max_batch_size,
                normalize=settings.embedding_normalize,
            )

        working_memory = WorkingMemoryConfig(
            enabled=settings.working_memory_enabled,
            scope=WorkingMemoryScope(settings.working_memory_scope),
        )

        logger.info(
            f"Memory configured: storage={settings.storage_backend}, "
            f"vector={settings.vector_backend}, embedding={settings.embedding_provider}"
        )

        return cls(
            storage=storage,
            embedding=embedding,
            vector=vector,
            enable_cache=settings.cache_enabled,
            cache_size=settings.cache_max_size,
            cache_ttl=settings.cache_ttl,
            working_memory=working_memory,
        )

    # =========================================================================
    # Capabilities
    # =========================================================================

    def has_vector_support(self) -> bool:
        return self.embedding is not None and self.vector is not None

    def get_embedding_adapter(self) -> Optional[EmbeddingAdapter]:
        return self.embedding

    def get_vector_adapter(self) -> Optional[VectorAdapter]:
        return self.vector

    def get_storage_adapter(self) -> StorageAdapter:
        return self.storage

    # =========================================================================
    # Embedding helpers
    # =========================================================================

    async def _embed_text(self, text: str) -> list[float]:
        """Embed one text, consulting the cache first."""
        assert self.embedding is not None
        if self._cache is not None:
            cached = self._cache.get(text)
            if cached is not None:
                return cached

        embedding = await self.embedding.embed(text)
        if self._cache is not None:
            self._cache.set(text, embedding)
        return embedding

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts in input order.

        Cached texts are served from the cache. The rest are sent to the
        adapter in chunks of its max_batch_size, one chunk at a time.
        """
        assert self.embedding is not None
        results: list[Optional[list[float]]] = [None] * len(texts)

        if self._cache is not None:
            split = self._cache.split_by_cached(texts)
            for hit in split.cached:
                results[hit.index] = hit.embedding
            pending = [(miss.index, miss.text) for miss in split.uncached]
        else:
            pending = list(enumerate(texts))

        chunk_size = max(1, self.embedding.max_batch_size)
        for start in range(0, len(pending), chunk_size):
            chunk = pending[start : start + chunk_size]
            chunk_texts = [text for _, text in chunk]
            embeddings = await self.embedding.embed_batch(chunk_texts)
            if len(embeddings) != len(chunk_texts):
                raise RecollectError(
                    ErrorKind.EMBEDDING_FAILURE,
                    f"Expected {len(chunk_texts)} embeddings, got {len(embeddings)}",
                )
            if self._cache is not None:
                self._cache.set_batch(chunk_texts, embeddings)
            for (index, _), embedding in zip(chunk, embeddings):
                results[index] = embedding

        return [embedding for embedding in results if embedding is not None]

    @staticmethod
    def _vector_metadata(message: Message, user_id: str, conversation_id: str) -> dict[str, Any]:
        return {
            "message_id": message.id,
            "conversation_id": conversation_id,
            "user_id": user_id,
            "role": message.role,
        }

    # =========================================================================
    # Messages
    # =========================================================================

    async def add_message(self, message: Message, user_id: str, conversation_id: str) -> None:
        """Store a message, then embed and index it when vectors are configured."""
        await self.save_message_with_context(message, user_id, conversation_id)

    async def save_message_with_context(
        self,
        message: Message,
        user_id: str,
        conversation_id: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Store a message and index its text for semantic search.

        Storage failures propagate. Embedding and indexing failures are
        logged and swallowed since the message itself is already saved.

        Args:
            message: Message to store
            user_id: Owner of the message bucket
            conversation_id: Conversation the message belongs to
            logger: Logger for this call (default: module logger)
        """
        log = logger or logging.getLogger(__name__)
        await self.storage.add_message(message, user_id, conversation_id)

        if not self.has_vector_support():
            return

        text = message.text()
        if not text:
            return

        assert self.vector is not None
        try:
            embedding = await self._embed_text(text)
            await self.vector.store(
                vector_id(conversation_id, message.id),
                embedding,
                self._vector_metadata(message, user_id, conversation_id),
                text,
            )
        except Exception as e:
            log.warning(f"Failed to embed message {message.id}: {e}")

    async def add_messages(
        self,
        messages: list[Message],
        user_id: str,
        conversation_id: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Store messages in order, then embed all text-bearing ones in one batch."""
        log = logger or logging.getLogger(__name__)
        await self.storage.add_messages(messages, user_id, conversation_id)

        if not self.has_vector_support():
            return

        with_text = [(message, message.text()) for message in messages]
        with_text = [(message, text) for message, text in with_text if text]
        if not with_text:
            return

        assert self.vector is not None
        try:
            embeddings = await self._embed_texts([text for _, text in with_text])
            items = [
                VectorItem(
                    id=vector_id(conversation_id, message.id),
                    vector=embedding,
                    metadata=self._vector_metadata(message, user_id, conversation_id),
                    content=text,
                )
                for (message, text), embedding in zip(with_text, embeddings)
            ]
            await self.vector.store_batch(items)
        except Exception as e:
            log.warning(f"Failed to embed {len(with_text)} message(s) in batch: {e}")

    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        options: Optional[GetMessagesOptions] = None,
    ) -> list[Message]:
        return await self.storage.get_messages(user_id, conversation_id, options)

    async def clear_messages(self, user_id: str, conversation_id: Optional[str] = None) -> None:
        """Remove messages. Conversations and working memory are kept."""
        await self.storage.clear_messages(user_id, conversation_id)

    async def get_messages_with_context(
        self,
        user_id: str,
        conversation_id: str,
        limit: Optional[int] = None,
        use_semantic_search: bool = False,
        current_query: Optional[str] = None,
        semantic_limit: Optional[int] = None,
        semantic_threshold: Optional[float] = None,
        merge_strategy: MergeStrategy = MergeStrategy.APPEND,
        logger: Optional[logging.Logger] = None,
    ) -> list[Message]:
        """Recent messages, optionally merged with semantically similar ones.

        The recent fetch always runs and its failure propagates. The
        semantic part (query embedding, vector search, hit resolution) is
        best-effort: any failure is logged at WARNING and only the recent
        messages are returned. Hits whose message is no longer stored are
        dropped.

        Args:
            user_id: Owner of the message bucket
            conversation_id: Conversation to read
            limit: Number of recent messages (default: storage limit)
            use_semantic_search: Enable semantic recall
            current_query: Text to search for; required for semantic recall
            semantic_limit: Maximum semantic hits (default: limit)
            semantic_threshold: Minimum hit score (default: 0)
            merge_strategy: How hits are merged (default: APPEND)
            logger: Logger for this call (default: module logger)

        Returns:
            Merged message list in strategy order

        Raises:
            RecollectError: If fetching recent messages fails
        """
        log = logger or logging.getLogger(__name__)
        recent = await self.storage.get_messages(
            user_id, conversation_id, GetMessagesOptions(limit=limit)
        )

        if not use_semantic_search or not current_query:
            return recent

        if not self.has_vector_support():
            log.debug("Vector support not configured, returning recent messages only")
            return recent

        assert self.vector is not None
        if semantic_limit is not None:
            search_limit = semantic_limit
        elif limit is not None:
            search_limit = limit
        else:
            search_limit = 10

        try:
            query_vector = await self._embed_text(current_query)
            hits = await self.vector.search(
                query_vector,
                limit=search_limit,
                threshold=semantic_threshold if semantic_threshold is not None else 0.0,
                filter={"conversation_id": conversation_id, "user_id": user_id},
            )
            semantic = await self._resolve_hits(hits, user_id, conversation_id)
        except Exception as e:
            log.warning(f"Semantic search failed, falling back to recent messages: {e}")
            return recent

        log.debug(f"Semantic search returned {len(semantic)} message(s) for {conversation_id}")
        return merge_messages(recent, semantic, MergeStrategy(merge_strategy))

    async def get_messages_with_semantic_search(
        self,
        user_id: str,
        conversation_id: str,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        semantic_limit: Optional[int] = None,
        semantic_threshold: Optional[float] = None,
        merge_strategy: MergeStrategy = MergeStrategy.APPEND,
        logger: Optional[logging.Logger] = None,
    ) -> list[Message]:
        """get_messages_with_context with semantic search switched on."""
        return await self.get_messages_with_context(
            user_id,
            conversation_id,
            limit=limit,
            use_semantic_search=True,
            current_query=query,
            semantic_limit=semantic_limit,
            semantic_threshold=semantic_threshold,
            merge_strategy=merge_strategy,
            logger=logger,
        )

    async def _resolve_hits(
        self, hits: list[SearchResult], user_id: str, conversation_id: str
    ) -> list[Message]:
        if not hits:
            return []
        stored = await self.storage.get_messages(user_id, conversation_id)
        by_id = {message.id: message for message in stored}

        resolved: list[Message] = []
        for hit in hits:
            message_id = (hit.metadata or {}).get("message_id")
            message = by_id.get(message_id) if message_id is not None else None
            if message is not None:
                resolved.append(message)
        return resolved

    async def search_similar(
        self,
        query: str,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = 10,
        threshold: float = 0.0,
    ) -> list[SearchResult]:
        """Raw vector search over indexed messages.

        Raises:
            RecollectError: VECTOR_ADAPTER_NOT_CONFIGURED or
                EMBEDDING_ADAPTER_NOT_CONFIGURED when a capability is missing
        """
        if self.vector is None:
            raise adapter_not_configured(ErrorKind.VECTOR_ADAPTER_NOT_CONFIGURED, "search_similar")
        if self.embedding is None:
            raise adapter_not_configured(
                ErrorKind.EMBEDDING_ADAPTER_NOT_CONFIGURED, "search_similar"
            )

        filter: dict[str, Any] = {}
        if user_id:
            filter["user_id"] = user_id
        if conversation_id:
            filter["conversation_id"] = conversation_id

        query_vector = await self._embed_text(query)
        return await self.vector.search(
            query_vector, limit=limit, threshold=threshold, filter=filter or None
        )

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(self, input: CreateConversationInput) -> Conversation:
        return await self.storage.create_conversation(input)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self.storage.get_conversation(conversation_id)

    async def get_conversations(self, resource_id: str) -> list[Conversation]:
        return await self.storage.get_conversations(resource_id)

    async def get_conversations_by_user_id(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[Conversation]:
        return await self.storage.get_conversations_by_user_id(user_id, limit=limit, offset=offset)

    async def query_conversations(self, options: ConversationQueryOptions) -> list[Conversation]:
        return await self.storage.query_conversations(options)

    async def update_conversation(
        self, conversation_id: str, updates: dict[str, Any]
    ) -> Conversation:
        return await self.storage.update_conversation(conversation_id, updates)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation, its messages and their vectors.

        Vectors are removed for every user's messages in the conversation,
        including messages already evicted from storage: ids still held by
        storage are merged with the ids the vector store tags with this
        conversation. Vector cleanup failures are logged, not raised.

        Raises:
            RecollectError: CONVERSATION_NOT_FOUND if the id is unknown
        """
        ids: list[str] = []
        if self.vector is not None:
            messages = await self.storage.get_conversation_messages(conversation_id, limit=0)
            ids = [vector_id(conversation_id, message.id) for message in messages]

        await self.storage.delete_conversation(conversation_id)

        if self.vector is None:
            return
        try:
            tagged = await self.vector.ids_matching({"conversation_id": conversation_id})
            known = set(ids)
            ids.extend(i for i in tagged if i not in known)
            if ids:
                await self.vector.delete_batch(ids)
                logger.debug(f"Deleted {len(ids)} vector(s) for conversation {conversation_id}")
        except Exception as e:
            logger.warning(f"Failed to delete vectors for conversation {conversation_id}: {e}")

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 100, offset: int = 0
    ) -> list[Message]:
        """Messages of every user in a conversation, oldest first."""
        return await self.storage.get_conversation_messages(
            conversation_id, limit=limit, offset=offset
        )

    # =========================================================================
    # Agent history
    # =========================================================================

    async def add_history_entry(self, entry: HistoryRecord) -> None:
        await self.storage.add_history_entry(entry)

    async def update_history_entry(self, entry_id: str, updates: dict[str, Any]) -> HistoryRecord:
        return await self.storage.update_history_entry(entry_id, updates)

    async def get_history_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        return await self.storage.get_history_entry(entry_id)

    async def add_history_step(self, step: HistoryRecord) -> None:
        await self.storage.add_history_step(step)

    async def update_history_step(self, step_id: str, updates: dict[str, Any]) -> HistoryRecord:
        return await self.storage.update_history_step(step_id, updates)

    async def get_history_step(self, step_id: str) -> Optional[HistoryRecord]:
        return await self.storage.get_history_step(step_id)

    async def add_timeline_event(self, event: HistoryRecord) -> None:
        await self.storage.add_timeline_event(event)

    async def get_all_history_entries_by_agent(self, agent_id: str) -> list[HistoryEntry]:
        return await self.storage.get_all_history_entries_by_agent(agent_id)

    # =========================================================================
    # Working memory
    # =========================================================================

    def has_working_memory_support(self) -> bool:
        return self.working_memory_config is not None and self.working_memory_config.enabled

    def get_working_memory_template(self) -> Optional[str]:
        return self.working_memory_config.template if self.working_memory_config else None

    def get_working_memory_schema(self) -> Optional[type]:
        return self.working_memory_config.schema if self.working_memory_config else None

    def get_working_memory_format(self) -> Optional[str]:
        """Returns "json" with a schema, "markdown" with a template, otherwise None."""
        return self.working_memory_config.format if self.working_memory_config else None

    def _working_memory_target(
        self, conversation_id: Optional[str], user_id: Optional[str]
    ) -> WorkingMemoryScope:
        assert self.working_memory_config is not None
        scope = self.working_memory_config.scope
        if scope is WorkingMemoryScope.CONVERSATION and not conversation_id:
            raise ValueError("conversation_id is required for conversation-scoped working memory")
        if scope is WorkingMemoryScope.USER and not user_id:
            raise ValueError("user_id is required for user-scoped working memory")
        return scope

    async def get_working_memory(
        self, conversation_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Optional[str]:
        """Stored working memory, or None when disabled or unset."""
        if not self.has_working_memory_support():
            return None
        scope = self._working_memory_target(conversation_id, user_id)
        return await self.storage.get_working_memory(
            scope, conversation_id=conversation_id, user_id=user_id
        )

    async def update_working_memory(
        self,
        content: WorkingMemoryContent,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """Replace the working memory.

        Raises:
            RecollectError: WORKING_MEMORY_DISABLED when not enabled,
                INVALID_WORKING_MEMORY_FORMAT when content fails schema validation,
                CONVERSATION_NOT_FOUND for an unknown conversation
        """
        if not self.has_working_memory_support():
            raise RecollectError(ErrorKind.WORKING_MEMORY_DISABLED, "Working memory is not enabled")

        assert self.working_memory_config is not None
        scope = self._working_memory_target(conversation_id, user_id)
        serialized = serialize_working_memory(content, self.working_memory_config.schema)
        await self.storage.set_working_memory(
            scope, serialized, conversation_id=conversation_id, user_id=user_id
        )

    async def clear_working_memory(
        self, conversation_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> None:
        if not self.has_working_memory_support():
            return
        scope = self._working_memory_target(conversation_id, user_id)
        await self.storage.delete_working_memory(
            scope, conversation_id=conversation_id, user_id=user_id
        )

    async def get_working_memory_instructions(
        self, conversation_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Optional[str]:
        """Prompt text describing the working memory, or None when disabled."""
        if not self.has_working_memory_support():
            return None
        assert self.working_memory_config is not None
        current = await self.get_working_memory(conversation_id=conversation_id, user_id=user_id)
        return build_instructions(self.working_memory_config, current)
