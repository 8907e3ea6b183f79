"""Error model for the recollect memory system.

A single exception type carries an ErrorKind tag plus structured details,
so callers branch on ``error.kind`` instead of on a class hierarchy:

    try:
        await memory.create_conversation(conv)
    except RecollectError as e:
        if e.kind is ErrorKind.CONVERSATION_ALREADY_EXISTS:
            ...

Input validation problems (empty text, mismatched list lengths) are raised
as plain ValueError.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Kinds of failures surfaced by the memory system."""

    CONVERSATION_ALREADY_EXISTS = "conversation_already_exists"
    CONVERSATION_NOT_FOUND = "conversation_not_found"
    HISTORY_NOT_FOUND = "history_not_found"
    DIMENSION_MISMATCH = "dimension_mismatch"
    EMPTY_VECTOR = "empty_vector"
    INVALID_WORKING_MEMORY_FORMAT = "invalid_working_memory_format"
    WORKING_MEMORY_DISABLED = "working_memory_disabled"
    EMBEDDING_FAILURE = "embedding_failure"
    VECTOR_SEARCH_FAILURE = "vector_search_failure"
    STORAGE_FAILURE = "storage_failure"
    VECTOR_ADAPTER_NOT_CONFIGURED = "vector_adapter_not_configured"
    EMBEDDING_ADAPTER_NOT_CONFIGURED = "embedding_adapter_not_configured"


class RecollectError(Exception):
    """Exception raised by recollect components.

    Args:
        kind: The ErrorKind tag
        message: Human-readable message
        details: Optional structured context (ids, dimensions, ...)
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"RecollectError(kind={self.kind.value!r}, message={self.message!r})"


def conversation_not_found(conversation_id: str) -> RecollectError:
    return RecollectError(
        ErrorKind.CONVERSATION_NOT_FOUND,
        f"Conversation not found: {conversation_id}",
        {"conversation_id": conversation_id},
    )


def conversation_already_exists(conversation_id: str) -> RecollectError:
    return RecollectError(
        ErrorKind.CONVERSATION_ALREADY_EXISTS,
        f"Conversation already exists: {conversation_id}",
        {"conversation_id": conversation_id},
    )


def dimension_mismatch(expected: int, actual: int, context: str = "Vector") -> RecollectError:
    return RecollectError(
        ErrorKind.DIMENSION_MISMATCH,
        f"{context} dimension mismatch. Expected {expected}, got {actual}",
        {"expected": expected, "actual": actual},
    )


def adapter_not_configured(kind: ErrorKind, operation: str) -> RecollectError:
    """Build a *_ADAPTER_NOT_CONFIGURED error for the given operation."""
    adapter = "Vector" if kind is ErrorKind.VECTOR_ADAPTER_NOT_CONFIGURED else "Embedding"
    return RecollectError(
        kind,
        f"{adapter} adapter is required for {operation} but not configured",
        {"operation": operation},
    )


def history_not_found(record_id: str, what: str = "History entry") -> RecollectError:
    return RecollectError(
        ErrorKind.HISTORY_NOT_FOUND,
        f"{what} not found: {record_id}",
        {"id": record_id},
    )
