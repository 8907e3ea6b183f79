"""Vector math utilities for similarity calculations.

Pure functions over equal-length float sequences. Similarity values from
cosine_similarity live in [-1, 1]; similarity_to_score maps them onto the
[0, 1] "higher is better" scale used for thresholds and sorting.
"""

import math
from typing import Sequence

from recollect.errors import ErrorKind, RecollectError


def _check_lengths(a: Sequence[float], b: Sequence[float]) -> None:
    if len(a) != len(b):
        raise RecollectError(
            ErrorKind.DIMENSION_MISMATCH,
            f"Vectors must have same length. Got {len(a)} and {len(b)}",
            {"expected": len(a), "actual": len(b)},
        )


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate the dot product of two vectors."""
    _check_lengths(a, b)
    return sum(x * y for x, y in zip(a, b))


def magnitude(vector: Sequence[float]) -> float:
    """Calculate the Euclidean length of a vector."""
    return math.sqrt(sum(x * x for x in vector))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude

    Raises:
        RecollectError: DIMENSION_MISMATCH if lengths differ,
            EMPTY_VECTOR if the vectors are empty
    """
    _check_lengths(a, b)
    if len(a) == 0:
        raise RecollectError(ErrorKind.EMPTY_VECTOR, "Vectors cannot be empty")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    norm_a = math.sqrt(norm_a)
    norm_b = math.sqrt(norm_b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot / (norm_a * norm_b)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate Euclidean distance; lower means more similar."""
    _check_lengths(a, b)
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def normalize_vector(vector: list[float]) -> list[float]:
    """Scale a vector to unit length.

    Returns the input unchanged when its magnitude is zero.
    """
    length = magnitude(vector)
    if length == 0:
        return vector
    return [x / length for x in vector]


def similarity_to_score(similarity: float) -> float:
    """Map cosine similarity from [-1, 1] onto [0, 1]."""
    return (similarity + 1) / 2


def batch_cosine_similarity(
    query: Sequence[float], targets: Sequence[Sequence[float]]
) -> list[float]:
    """Cosine similarity between a query and each target vector."""
    return [cosine_similarity(query, target) for target in targets]


def top_k_similar(
    query: Sequence[float],
    targets: Sequence[tuple[str, Sequence[float]]],
    k: int,
) -> list[tuple[str, float]]:
    """Find the k targets most similar to the query.

    Args:
        query: Query vector
        targets: (id, vector) pairs
        k: Number of results to keep

    Returns:
        (id, similarity) pairs sorted by similarity descending. The sort is
        stable, so ties keep their input order.
    """
    similarities = [
        (target_id, cosine_similarity(query, vector)) for target_id, vector in targets
    ]
    similarities.sort(key=lambda pair: pair[1], reverse=True)
    return similarities[: max(k, 0)]
