"""In-memory vector store with brute-force cosine search.

Every search scans all stored vectors (O(n)); meant for development, tests
and small corpora. The first stored vector fixes the dimensionality until
clear() is called.
"""

import copy
from typing import Any, Optional

from recollect.errors import dimension_mismatch
from recollect.memory.types import SearchResult, VectorItem
from recollect.memory.vector_math import cosine_similarity, similarity_to_score
from recollect.storage.base import VectorAdapter, matches_filter

# Rough per-float size used by get_stats
_BYTES_PER_FLOAT = 4


class InMemoryVectorAdapter(VectorAdapter):
    """Vector storage held in a dict keyed by id.

    Vectors and metadata are deep-copied on the way in and out, so callers
    cannot mutate stored entries.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, VectorItem] = {}
        self._dimensions: Optional[int] = None

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    async def store(
        self,
        id: str,
        vector: list[float],
        metadata: Optional[dict[str, Any]] = None,
        content: Optional[str] = None,
    ) -> None:
        """Insert or overwrite a vector.

        Raises:
            RecollectError: DIMENSION_MISMATCH if the store already holds
                vectors of a different length
        """
        if self._vectors and len(vector) != self._dimensions:
            raise dimension_mismatch(self._dimensions or 0, len(vector))
        if not self._vectors:
            self._dimensions = len(vector)

        self._vectors[id] = VectorItem(
            id=id,
            vector=[float(x) for x in vector],
            metadata=copy.deepcopy(metadata) if metadata is not None else None,
            content=content,
        )

    async def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchResult]:
        """Score every stored vector against the query.

        Args:
            query_vector: Query embedding
            limit: Maximum number of results (default: 10)
            threshold: Minimum score in [0, 1] (default: 0)
            filter: Exact-match metadata filter

        Returns:
            Results sorted by score descending, all with score >= threshold

        Raises:
            RecollectError: DIMENSION_MISMATCH if the query length differs
                from the established dimensionality
        """
        if not self._vectors:
            return []

        if self._dimensions is not None and len(query_vector) != self._dimensions:
            raise dimension_mismatch(self._dimensions, len(query_vector), context="Query vector")

        results: list[SearchResult] = []
        for item in self._vectors.values():
            if filter and not matches_filter(item.metadata, filter):
                continue

            similarity = cosine_similarity(query_vector, item.vector)
            score = similarity_to_score(similarity)
            if score >= threshold:
                results.append(
                    SearchResult(
                        id=item.id,
                        vector=list(item.vector),
                        score=score,
                        distance=1 - similarity,
                        metadata=copy.deepcopy(item.metadata),
                        content=item.content,
                    )
                )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def delete(self, id: str) -> None:
        self._vectors.pop(id, None)

    async def delete_batch(self, ids: list[str]) -> None:
        for vector_id in ids:
            self._vectors.pop(vector_id, None)

    async def ids_matching(self, filter: dict[str, Any]) -> list[str]:
        return [
            item.id for item in self._vectors.values() if matches_filter(item.metadata, filter)
        ]

    async def clear(self) -> None:
        self._vectors.clear()
        self._dimensions = None

    async def count(self) -> int:
        return len(self._vectors)

    async def get(self, id: str) -> Optional[VectorItem]:
        item = self._vectors.get(id)
        if item is None:
            return None
        return copy.deepcopy(item)

    def get_stats(self) -> dict[str, Any]:
        """Count, dimensionality and an approximate memory footprint in bytes."""
        count = len(self._vectors)
        memory_usage = count * (self._dimensions or 0) * _BYTES_PER_FLOAT
        return {
            "count": count,
            "dimensions": self._dimensions,
            "memory_usage": memory_usage,
        }
