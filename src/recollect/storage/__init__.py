"""Storage layer for recollect."""

from recollect.storage.base import StorageAdapter, VectorAdapter
from recollect.storage.chromadb import ChromaVectorAdapter
from recollect.storage.in_memory import InMemoryStorageAdapter
from recollect.storage.sqlite import SQLiteStorageAdapter
from recollect.storage.vector import InMemoryVectorAdapter

__all__ = [
    "ChromaVectorAdapter",
    "InMemoryStorageAdapter",
    "InMemoryVectorAdapter",
    "SQLiteStorageAdapter",
    "StorageAdapter",
    "VectorAdapter",
]
