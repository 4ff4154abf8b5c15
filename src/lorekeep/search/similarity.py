"""Vector similarity."""

import math
from typing import Iterable, Optional


def cosine_similarity(a: Optional[Iterable[float]], b: Optional[Iterable[float]]) -> float:
    """
    Compute cosine similarity between two vectors.

    Dot product divided by the product of magnitudes. Empty vectors,
    vectors of different lengths, zero-magnitude vectors and non-finite
    values all yield 0.0 rather than an error.

    Returns:
        Similarity in [-1, 1]
    """
    list_a = list(a or [])
    list_b = list(b or [])
    if not list_a or not list_b or len(list_a) != len(list_b):
        return 0.0

    if any(not math.isfinite(v) for v in list_a) or any(not math.isfinite(v) for v in list_b):
        return 0.0

    dot = sum(x * y for x, y in zip(list_a, list_b))
    denom = math.sqrt(sum(x * x for x in list_a)) * math.sqrt(sum(y * y for y in list_b))
    if not denom:
        return 0.0

    # Clamp float error just outside the range
    return max(-1.0, min(1.0, dot / denom))
