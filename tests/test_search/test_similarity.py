"""Tests for cosine similarity."""

import math

import pytest

from lorekeep.search.similarity import cosine_similarity


class TestCosineSimilarity:
    """Tests for cosine_similarity()."""

    def test_identical_and_orthogonal(self):
        """Test the ends of the range."""
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_scale_invariant(self):
        """Test that magnitude does not change the result."""
        assert cosine_similarity([3.0, 4.0], [0.3, 0.4]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.8, 0.6]) == pytest.approx(0.8)

    @pytest.mark.parametrize(
        "a,b",
        [
            ([], [1.0]),
            (None, [1.0]),
            ([1.0, 2.0], [1.0]),
            ([0.0, 0.0], [1.0, 1.0]),
            ([math.nan, 1.0], [1.0, 1.0]),
            ([math.inf, 1.0], [1.0, 1.0]),
        ],
    )
    def test_degenerate_inputs(self, a, b):
        """Test that unusable vectors score 0.0 instead of raising."""
        assert cosine_similarity(a, b) == 0.0

    def test_result_is_clamped(self):
        """Test that float error never leaves [-1, 1]."""
        vector = [0.1] * 1000
        assert cosine_similarity(vector, vector) <= 1.0
