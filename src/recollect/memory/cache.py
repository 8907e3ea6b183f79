"""Bounded embedding cache with TTL expiry.

Avoids redundant embedding calls for repeated text. Entries live in an
OrderedDict ordered from least to most recently used:
- reads move an entry to the most-recent end
- inserting a new key into a full cache evicts the entry at the oldest end
- entries older than the TTL are dropped lazily when read

Cache keys are a 32-bit rolling hash of the text joined with its length.
Two different texts can collide on the same key; that is accepted.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Characters of the source text kept on each entry for debugging
TEXT_PREFIX_LENGTH = 100


@dataclass
class CacheEntry:
    """A cached embedding."""
    embedding: list[float]
    timestamp: float
    text_prefix: str


@dataclass
class CacheStats:
    """Cache statistics snapshot."""
    size: int
    valid_entries: int
    max_size: int
    ttl: float


@dataclass
class CachedEmbedding:
    text: str
    embedding: list[float]
    index: int


@dataclass
class UncachedText:
    text: str
    index: int


@dataclass
class CacheSplit:
    """Partition of a text list into cache hits and misses.

    Both lists keep the original positions in ``index`` so callers can embed
    only the misses and reassemble the results in input order.
    """
    cached: list[CachedEmbedding] = field(default_factory=list)
    uncached: list[UncachedText] = field(default_factory=list)


def cache_key(text: str) -> str:
    """Compute the cache key for a text.

    Args:
        text: Input text

    Returns:
        "{hash}_{length}" where hash is a signed 32-bit rolling hash
    """
    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return f"{h}_{len(text)}"


class EmbeddingCache:
    """LRU-style cache mapping text to embedding vectors.

    Args:
        max_size: Maximum number of entries (default: 1000)
        ttl: Entry lifetime in seconds (default: 3600)
        clock: Time source returning seconds (default: time.monotonic)

    Example:
        >>> cache = EmbeddingCache(max_size=2)
        >>> cache.set("hello", [0.1, 0.2])
        >>> cache.get("hello")
        [0.1, 0.2]
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 3600.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def get(self, text: str) -> Optional[list[float]]:
        """Get a cached embedding.

        Returns:
            A copy of the embedding, or None if absent or expired
        """
        key = cache_key(text)
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return list(entry.embedding)

    def set(self, text: str, embedding: list[float]) -> None:
        """Store an embedding, evicting the oldest entry when full."""
        key = cache_key(text)

        if key not in self._entries and len(self._entries) >= self.max_size:
            evicted_key, _ = self._entries.popitem(last=False)
            logger.debug(f"Embedding cache full, evicted {evicted_key}")

        self._entries[key] = CacheEntry(
            embedding=list(embedding),
            timestamp=self._clock(),
            text_prefix=text[:TEXT_PREFIX_LENGTH],
        )
        self._entries.move_to_end(key)

    def has(self, text: str) -> bool:
        return self.get(text) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def get_stats(self) -> CacheStats:
        now = self._clock()
        valid = sum(1 for entry in self._entries.values() if not self._is_expired(entry, now))
        return CacheStats(
            size=len(self._entries),
            valid_entries=valid,
            max_size=self.max_size,
            ttl=self.ttl,
        )


class BatchEmbeddingCache(EmbeddingCache):
    """EmbeddingCache with helpers for embedding many texts at once."""

    def get_batch(self, texts: list[str]) -> list[Optional[list[float]]]:
        """Look up several texts; None marks a miss."""
        return [self.get(text) for text in texts]

    def set_batch(self, texts: list[str], embeddings: list[list[float]]) -> None:
        """Store several embeddings.

        Raises:
            ValueError: If texts and embeddings differ in length
        """
        if len(texts) != len(embeddings):
            raise ValueError(
                f"Length mismatch: texts={len(texts)}, embeddings={len(embeddings)}"
            )
        for text, embedding in zip(texts, embeddings):
            self.set(text, embedding)

    def split_by_cached(self, texts: list[str]) -> CacheSplit:
        """Partition texts into cached and uncached, keeping input indices."""
        split = CacheSplit()
        for index, text in enumerate(texts):
            embedding = self.get(text)
            if embedding is not None:
                split.cached.append(CachedEmbedding(text=text, embedding=embedding, index=index))
            else:
                split.uncached.append(UncachedText(text=text, index=index))
        return split
