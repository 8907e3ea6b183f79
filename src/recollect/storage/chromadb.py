"""ChromaDB-backed vector store.

This module adapts a ChromaDB collection to the VectorAdapter contract:
- Persistent storage (production) via PersistentClient
- Ephemeral storage (testing) via EphemeralClient
- Cosine distance metric, converted back to [0, 1] scores on search
- Metadata filters translated to Chroma ``where`` clauses
- The same dimension lock-in as the in-memory store
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import chromadb  # type: ignore[import-not-found]
from chromadb.api.models.Collection import Collection  # type: ignore[import-not-found]

from recollect.errors import ErrorKind, RecollectError, dimension_mismatch
from recollect.memory.types import SearchResult, VectorItem
from recollect.memory.vector_math import similarity_to_score
from recollect.storage.base import VectorAdapter

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, int, float, bool)


def _to_chroma_metadata(metadata: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Chroma only accepts scalar, non-null metadata values; others become JSON."""
    if not metadata:
        return None
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, _SCALAR_TYPES) else json.dumps(value)
    return cleaned or None


def _to_where(filter: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Translate an exact-match filter into a Chroma where clause."""
    if not filter:
        return None
    clauses = [{key: value} for key, value in filter.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _as_floats(embedding: Any) -> list[float]:
    return [float(x) for x in embedding]


class ChromaVectorAdapter(VectorAdapter):
    """Vector storage on a ChromaDB collection.

    Args:
        db_path: Path to ChromaDB persistent storage directory.
                 Defaults to ~/.recollect/chroma_db.
        collection_name: Name of the collection (default: "messages")
        ephemeral: If True, use in-memory storage for testing (default: False)

    Raises:
        RecollectError: STORAGE_FAILURE if ChromaDB initialization fails
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        collection_name: str = "messages",
        ephemeral: bool = False,
    ):
        self.collection_name = collection_name
        self.ephemeral = ephemeral
        self._dimensions: Optional[int] = None

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".recollect" / "chroma_db"

        try:
            if ephemeral:
                self._client = chromadb.EphemeralClient()
            else:
                if self.db_path is not None:
                    self.db_path.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.db_path))

            self._collection = self._get_or_create_collection()
            self._dimensions = self._detect_dimensions()

        except RecollectError:
            raise
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to initialize ChromaDB storage: {e}",
            ) from e

    def _get_or_create_collection(self) -> Collection:
        # Cosine space so distances convert back to cosine similarity
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def _detect_dimensions(self) -> Optional[int]:
        """Adopt the dimensionality of vectors already in a persistent collection."""
        if self._collection.count() == 0:
            return None
        existing = self._collection.get(limit=1, include=["embeddings"])
        embeddings = existing.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return len(embeddings[0])

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
        """Upsert a vector.

        Raises:
            RecollectError: DIMENSION_MISMATCH on a length mismatch,
                STORAGE_FAILURE if ChromaDB rejects the write
        """
        count = await self.count()
        if count > 0 and self._dimensions is not None and len(vector) != self._dimensions:
            raise dimension_mismatch(self._dimensions, len(vector))

        upsert_kwargs: dict[str, Any] = {
            "ids": [id],
            "embeddings": [_as_floats(vector)],
        }
        chroma_metadata = _to_chroma_metadata(metadata)
        if chroma_metadata is not None:
            upsert_kwargs["metadatas"] = [chroma_metadata]
        if content is not None:
            upsert_kwargs["documents"] = [content]

        try:
            self._collection.upsert(**upsert_kwargs)
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to store vector {id}: {e}",
                {"id": id},
            ) from e

        if count == 0:
            self._dimensions = len(vector)

    async def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchResult]:
        """Perform semantic search with optional metadata filtering.

        Raises:
            RecollectError: DIMENSION_MISMATCH on a length mismatch,
                VECTOR_SEARCH_FAILURE if the ChromaDB query fails
        """
        count = await self.count()
        if count == 0 or limit <= 0:
            return []

        if self._dimensions is not None and len(query_vector) != self._dimensions:
            raise dimension_mismatch(self._dimensions, len(query_vector), context="Query vector")

        query_kwargs: dict[str, Any] = {
            "query_embeddings": [_as_floats(query_vector)],
            "n_results": min(limit, count),
            "include": ["embeddings", "documents", "metadatas", "distances"],
        }
        where = _to_where(filter)
        if where is not None:
            query_kwargs["where"] = where

        try:
            raw = self._collection.query(**query_kwargs)
        except Exception as e:
            raise RecollectError(
                ErrorKind.VECTOR_SEARCH_FAILURE,
                f"Failed to search vectors: {e}",
            ) from e

        # ChromaDB wraps every field in a per-query list; take the first query
        ids = raw["ids"][0] if raw.get("ids") else []
        distances = raw["distances"][0] if raw.get("distances") is not None else []
        metadatas = raw["metadatas"][0] if raw.get("metadatas") is not None else []
        documents = raw["documents"][0] if raw.get("documents") is not None else []
        embeddings = raw["embeddings"][0] if raw.get("embeddings") is not None else []

        results: list[SearchResult] = []
        for position, vector_id in enumerate(ids):
            distance = float(distances[position])
            similarity = 1.0 - distance
            score = similarity_to_score(similarity)
            if score < threshold:
                continue
            results.append(
                SearchResult(
                    id=vector_id,
                    vector=_as_floats(embeddings[position]) if len(embeddings) > position else [],
                    score=score,
                    distance=distance,
                    metadata=dict(metadatas[position]) if metadatas and metadatas[position] else None,
                    content=documents[position] if documents else None,
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def delete(self, id: str) -> None:
        await self.delete_batch([id])

    async def delete_batch(self, ids: list[str]) -> None:
        if not ids:
            return
        try:
            self._collection.delete(ids=ids)
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to delete vectors: {e}",
                {"ids": ids},
            ) from e

    async def ids_matching(self, filter: dict[str, Any]) -> list[str]:
        """Ids whose metadata matches, looked up with a where clause.

        Raises:
            RecollectError: STORAGE_FAILURE if the ChromaDB lookup fails
        """
        try:
            raw = self._collection.get(where=_to_where(filter), include=[])
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to look up vectors: {e}",
                {"filter": filter},
            ) from e
        return list(raw.get("ids") or [])

    async def clear(self) -> None:
        """Drop and recreate the collection, releasing the dimensionality."""
        try:
            self._client.delete_collection(self.collection_name)
            self._collection = self._get_or_create_collection()
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to clear collection: {e}",
            ) from e
        self._dimensions = None
        logger.info(f"Cleared ChromaDB collection {self.collection_name}")

    async def count(self) -> int:
        try:
            return self._collection.count()
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to count vectors: {e}",
            ) from e

    async def get(self, id: str) -> Optional[VectorItem]:
        try:
            raw = self._collection.get(
                ids=[id],
                include=["embeddings", "documents", "metadatas"],
            )
        except Exception as e:
            raise RecollectError(
                ErrorKind.STORAGE_FAILURE,
                f"Failed to get vector {id}: {e}",
            ) from e

        if not raw.get("ids"):
            return None

        embeddings = raw.get("embeddings")
        metadatas = raw.get("metadatas")
        documents = raw.get("documents")
        return VectorItem(
            id=raw["ids"][0],
            vector=_as_floats(embeddings[0]) if embeddings is not None else [],
            metadata=dict(metadatas[0]) if metadatas and metadatas[0] else None,
            content=documents[0] if documents else None,
        )
