"""Unit tests for vector math utilities."""

import math

import pytest

from recollect.errors import ErrorKind, RecollectError
from recollect.memory.vector_math import (
    batch_cosine_similarity,
    cosine_similarity,
    dot_product,
    euclidean_distance,
    magnitude,
    normalize_vector,
    similarity_to_score,
    top_k_similar,
)


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical_vectors(self):
        """Test identical non-zero vectors have similarity 1."""
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        """Test opposite vectors have similarity -1."""
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        """Test orthogonal vectors have similarity 0."""
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_symmetric(self):
        """Test cos(a, b) == cos(b, a)."""
        a = [0.3, -1.2, 4.0]
        b = [2.0, 0.5, -0.7]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_scale_invariant(self):
        """Test scaling a vector does not change similarity."""
        a = [1.0, 2.0, 3.0]
        b = [3.0, 1.0, 0.5]
        scaled = [x * 7.5 for x in a]
        assert cosine_similarity(scaled, b) == pytest.approx(cosine_similarity(a, b))

    def test_zero_magnitude_returns_zero(self):
        """Test a zero vector yields similarity 0 instead of dividing by zero."""
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0

    def test_dimension_mismatch(self):
        """Test different lengths raise DIMENSION_MISMATCH."""
        with pytest.raises(RecollectError) as exc_info:
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])
        assert exc_info.value.kind is ErrorKind.DIMENSION_MISMATCH
        assert "Got 2 and 3" in str(exc_info.value)

    def test_empty_vectors(self):
        """Test empty vectors raise EMPTY_VECTOR."""
        with pytest.raises(RecollectError) as exc_info:
            cosine_similarity([], [])
        assert exc_info.value.kind is ErrorKind.EMPTY_VECTOR


class TestScoreAndNormalize:
    """Tests for similarity_to_score, normalize_vector and helpers."""

    @pytest.mark.parametrize(
        "similarity,expected",
        [(-1.0, 0.0), (0.0, 0.5), (1.0, 1.0)],
    )
    def test_similarity_to_score(self, similarity, expected):
        """Test similarity maps linearly onto [0, 1]."""
        assert similarity_to_score(similarity) == pytest.approx(expected)

    def test_normalize_unit_length(self):
        """Test normalized vectors have magnitude 1."""
        normalized = normalize_vector([3.0, 4.0])
        assert normalized == pytest.approx([0.6, 0.8])
        assert magnitude(normalized) == pytest.approx(1.0)

    def test_normalize_zero_vector_unchanged(self):
        """Test zero vector is returned as-is."""
        assert normalize_vector([0.0, 0.0, 0.0]) == [0.0, 0.0, 0.0]

    def test_dot_product(self):
        """Test dot product."""
        assert dot_product([1.0, 2.0, 3.0], [4.0, 5.0, 6.0]) == pytest.approx(32.0)

    def test_euclidean_distance(self):
        """Test Euclidean distance."""
        assert euclidean_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)

    def test_euclidean_distance_mismatch(self):
        """Test Euclidean distance rejects different lengths."""
        with pytest.raises(RecollectError):
            euclidean_distance([1.0], [1.0, 2.0])

    def test_magnitude(self):
        """Test magnitude."""
        assert magnitude([1.0, 1.0]) == pytest.approx(math.sqrt(2))


class TestTopK:
    """Tests for batch and top-k similarity."""

    def test_batch_cosine_similarity(self):
        """Test one similarity per target, in order."""
        result = batch_cosine_similarity([1.0, 0.0], [[1.0, 0.0], [0.0, 1.0], [-1.0, 0.0]])
        assert result == pytest.approx([1.0, 0.0, -1.0])

    def test_top_k_sorted_descending(self):
        """Test results are sorted by similarity, best first."""
        targets = [
            ("orthogonal", [0.0, 1.0]),
            ("same", [2.0, 0.0]),
            ("opposite", [-1.0, 0.0]),
        ]
        result = top_k_similar([1.0, 0.0], targets, k=2)
        assert [target_id for target_id, _ in result] == ["same", "orthogonal"]

    def test_top_k_ties_keep_input_order(self):
        """Test equal similarities keep their input order."""
        targets = [("b", [1.0, 0.0]), ("a", [2.0, 0.0]), ("c", [3.0, 0.0])]
        result = top_k_similar([1.0, 0.0], targets, k=3)
        assert [target_id for target_id, _ in result] == ["b", "a", "c"]

    def test_top_k_larger_than_targets(self):
        """Test k beyond the number of targets returns everything."""
        result = top_k_similar([1.0], [("x", [1.0])], k=10)
        assert len(result) == 1
