"""Configuration settings for recollect.

This module provides Pydantic Settings for configuration management with:
- Environment variable support (RECOLLECT_ prefix)
- .env file support
- Type validation and defaults
"""

import logging
import sys
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RecollectSettings(BaseSettings):
    """Configuration settings for the memory system.

    Settings are loaded from environment variables with the RECOLLECT_ prefix.

    Attributes:
        storage_backend: Message storage, "memory" or "sqlite" (default: memory)
        sqlite_path: Path to SQLite database (default: ~/.recollect/recollect.db)
        storage_limit: Messages kept per user and conversation (default: 100)
        vector_backend: "none", "memory" or "chroma" (default: none)
        chroma_path: Path to ChromaDB storage (default: ~/.recollect/chroma_db)
        collection_name: ChromaDB collection name (default: messages)
        embedding_provider: "none" or "ollama" (default: none)
        ollama_host: Ollama server host URL (default: http://localhost:11434)
        ollama_model: Embedding model name (default: nomic-embed-text)
        log_level: Logging level (default: INFO)

    Example:
        >>> settings = RecollectSettings()
        >>> print(settings.storage_limit)
        100

        >>> # Override via environment
        >>> # RECOLLECT_STORAGE_BACKEND=sqlite
        >>> settings = RecollectSettings()
        >>> print(settings.storage_backend)
        sqlite
    """

    model_config = SettingsConfigDict(
        env_prefix="RECOLLECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Message storage
    storage_backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="Conversation and message storage backend",
    )
    sqlite_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (default: ~/.recollect/recollect.db)",
    )
    storage_limit: int = Field(
        default=100,
        ge=1,
        description="Maximum messages kept per (user, conversation)",
    )

    # Vector store
    vector_backend: Literal["none", "memory", "chroma"] = Field(
        default="none",
        description="Vector store used for semantic search",
    )
    chroma_path: Optional[Path] = Field(
        default=None,
        description="Path to ChromaDB storage (default: ~/.recollect/chroma_db)",
    )
    collection_name: str = Field(
        default="messages",
        description="ChromaDB collection name",
    )

    # Embeddings
    embedding_provider: Literal["none", "ollama"] = Field(
        default="none",
        description="Embedding provider used for semantic search",
    )
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama server host URL",
    )
    ollama_model: str = Field(
        default="nomic-embed-text",
        description="Embedding model name",
    )
    ollama_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Ollama request timeout in seconds",
    )
    embedding_max_batch_size: int = Field(
        default=100,
        ge=1,
        description="Texts per embedding request",
    )
    embedding_normalize: bool = Field(
        default=False,
        description="L2-normalise embeddings",
    )

    # Embedding cache
    cache_enabled: bool = Field(
        default=True,
        description="Cache embeddings by text",
    )
    cache_max_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum cached embeddings",
    )
    cache_ttl: float = Field(
        default=3600.0,
        gt=0,
        description="Cache entry lifetime in seconds",
    )

    # Working memory
    working_memory_enabled: bool = Field(
        default=False,
        description="Enable working memory",
    )
    working_memory_scope: Literal["conversation", "user"] = Field(
        default="conversation",
        description="Attach working memory to each conversation or to the user",
    )

    # Context assembly and background writes
    context_limit: int = Field(
        default=10,
        ge=0,
        description="Recent messages loaded when preparing a conversation context",
    )
    queue_max_concurrency: int = Field(
        default=10,
        ge=1,
        description="Concurrent background memory writes",
    )
    queue_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Per-attempt timeout of background writes in seconds",
    )
    queue_retries: int = Field(
        default=5,
        ge=0,
        description="Retries of a failed background write",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    def get_sqlite_path(self) -> Optional[Path]:
        """Get the SQLite path, resolving to default if not set."""
        if self.sqlite_path:
            return self.sqlite_path.expanduser().resolve()
        return None

    def get_chroma_path(self) -> Optional[Path]:
        """Get the ChromaDB path, resolving to default if not set."""
        if self.chroma_path:
            return self.chroma_path.expanduser().resolve()
        return None


def configure_logging(log_level: str = "INFO") -> None:
    """Configure logging to stderr.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info(f"Logging initialized at {log_level.upper()} level")
