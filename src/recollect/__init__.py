"""Recollect - conversation memory for agents.

This package stores conversations and bounded per-user message logs, and
optionally recalls semantically similar history through embeddings and a
vector store.

Main components:
- memory.memory: Memory, the context assembler (recency + semantic merge)
- memory.manager: MemoryManager, turn-level orchestration with background saves
- storage: in-memory and SQLite conversation stores, in-memory and ChromaDB vector stores
- embedding.ollama: Ollama embedding adapter
- config: Pydantic Settings for configuration management

Usage:
    from recollect import Memory, MemoryManager, RecollectSettings

    memory = Memory.from_settings(RecollectSettings())
    manager = MemoryManager("my-agent", memory=memory)
"""

from recollect.config import RecollectSettings, configure_logging
from recollect.errors import ErrorKind, RecollectError
from recollect.memory import Memory, MemoryManager, Message, PreparedContext

__all__ = [
    "ErrorKind",
    "Memory",
    "MemoryManager",
    "Message",
    "PreparedContext",
    "RecollectError",
    "RecollectSettings",
    "configure_logging",
]
__version__ = "0.1.0"
