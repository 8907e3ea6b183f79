"""Unit tests for the embedding cache."""

import pytest

from recollect.memory.cache import BatchEmbeddingCache, EmbeddingCache, cache_key


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestCacheKey:
    """Tests for cache_key."""

    def test_deterministic(self):
        """Test the same text always gives the same key."""
        assert cache_key("hello world") == cache_key("hello world")

    def test_includes_length(self):
        """Test the key ends with the text length."""
        assert cache_key("hello").endswith("_5")

    def test_signed_32_bit(self):
        """Test the hash part stays in the signed 32-bit range."""
        h = int(cache_key("x" * 500).rsplit("_", 1)[0])
        assert -(2**31) <= h < 2**31

    def test_empty_text(self):
        """Test empty text has key 0_0."""
        assert cache_key("") == "0_0"


class TestEmbeddingCache:
    """Tests for EmbeddingCache."""

    def test_set_and_get(self, clock):
        """Test a stored embedding is returned."""
        cache = EmbeddingCache(clock=clock)
        cache.set("hello", [0.1, 0.2])
        assert cache.get("hello") == [0.1, 0.2]
        assert cache.has("hello")

    def test_miss_returns_none(self, clock):
        """Test unknown text returns None."""
        cache = EmbeddingCache(clock=clock)
        assert cache.get("missing") is None
        assert not cache.has("missing")

    def test_returns_copy(self, clock):
        """Test mutating a returned or stored list does not affect the cache."""
        cache = EmbeddingCache(clock=clock)
        original = [1.0, 2.0]
        cache.set("text", original)
        original.append(3.0)
        returned = cache.get("text")
        returned.append(4.0)
        assert cache.get("text") == [1.0, 2.0]

    def test_ttl_expiry(self, clock):
        """Test entries older than ttl are treated as absent and removed."""
        cache = EmbeddingCache(ttl=10.0, clock=clock)
        cache.set("text", [1.0])

        clock.advance(10.0)
        assert cache.get("text") == [1.0]

        clock.advance(0.5)
        assert cache.get("text") is None
        assert len(cache) == 0

    def test_capacity_evicts_oldest_inserted(self, clock):
        """Test a full cache drops its oldest entry for a new key."""
        cache = EmbeddingCache(max_size=2, clock=clock)
        cache.set("a", [1.0])
        cache.set("b", [2.0])
        cache.set("c", [3.0])

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("b") == [2.0]
        assert cache.get("c") == [3.0]

    def test_read_refreshes_recency(self, clock):
        """Test a read moves the entry to most recent."""
        cache = EmbeddingCache(max_size=2, clock=clock)
        cache.set("a", [1.0])
        cache.set("b", [2.0])
        cache.get("a")
        cache.set("c", [3.0])

        assert cache.get("a") == [1.0]
        assert cache.get("b") is None

    def test_overwrite_existing_key_does_not_evict(self, clock):
        """Test updating a present key keeps other entries."""
        cache = EmbeddingCache(max_size=2, clock=clock)
        cache.set("a", [1.0])
        cache.set("b", [2.0])
        cache.set("a", [9.0])

        assert len(cache) == 2
        assert cache.get("a") == [9.0]
        assert cache.get("b") == [2.0]

    def test_cleanup_and_stats(self, clock):
        """Test cleanup drops expired entries and stats count valid ones."""
        cache = EmbeddingCache(max_size=10, ttl=5.0, clock=clock)
        cache.set("old", [1.0])
        clock.advance(6.0)
        cache.set("new", [2.0])

        stats = cache.get_stats()
        assert stats.size == 2
        assert stats.valid_entries == 1
        assert stats.max_size == 10
        assert stats.ttl == 5.0

        assert cache.cleanup() == 1
        assert len(cache) == 1

    def test_clear(self, clock):
        """Test clear empties the cache."""
        cache = EmbeddingCache(clock=clock)
        cache.set("a", [1.0])
        cache.clear()
        assert len(cache) == 0

    def test_invalid_configuration(self):
        """Test non-positive size or ttl is rejected."""
        with pytest.raises(ValueError):
            EmbeddingCache(max_size=0)
        with pytest.raises(ValueError):
            EmbeddingCache(ttl=0)


class TestBatchEmbeddingCache:
    """Tests for BatchEmbeddingCache."""

    def test_get_batch(self, clock):
        """Test batch lookup marks misses with None."""
        cache = BatchEmbeddingCache(clock=clock)
        cache.set("a", [1.0])
        assert cache.get_batch(["a", "b"]) == [[1.0], None]

    def test_set_batch_length_mismatch(self, clock):
        """Test set_batch rejects mismatched lists."""
        cache = BatchEmbeddingCache(clock=clock)
        with pytest.raises(ValueError, match="Length mismatch"):
            cache.set_batch(["a", "b"], [[1.0]])

    def test_split_by_cached_keeps_indices(self, clock):
        """Test split_by_cached partitions texts with their input positions."""
        cache = BatchEmbeddingCache(clock=clock)
        cache.set_batch(["b", "d"], [[2.0], [4.0]])

        split = cache.split_by_cached(["a", "b", "c", "d"])

        assert [(hit.text, hit.index, hit.embedding) for hit in split.cached] == [
            ("b", 1, [2.0]),
            ("d", 3, [4.0]),
        ]
        assert [(miss.text, miss.index) for miss in split.uncached] == [("a", 0), ("c", 2)]
