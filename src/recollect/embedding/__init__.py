"""Embedding layer for recollect."""

from recollect.embedding.base import DEFAULT_MAX_BATCH_SIZE, EmbeddingAdapter
from recollect.embedding.ollama import OllamaEmbeddingAdapter

__all__ = ["DEFAULT_MAX_BATCH_SIZE", "EmbeddingAdapter", "OllamaEmbeddingAdapter"]
