"""Embedding adapter contract."""

from abc import ABC, abstractmethod
from typing import Optional

DEFAULT_MAX_BATCH_SIZE = 100


class EmbeddingAdapter(ABC):
    """Pluggable text embedding capability.

    Attributes:
        max_batch_size: Largest number of texts callers should pass to a
            single embed_batch call
    """

    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...

    @abstractmethod
    def get_dimensions(self) -> Optional[int]:
        """Vector length, or None until it is known."""

    @abstractmethod
    def get_model_name(self) -> str:
        ...
