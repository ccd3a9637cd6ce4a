from __future__ import annotations

import math
from typing import Sequence

from recipe_feed_server.core.errors import DimensionMismatchError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Both vectors must be non-empty and of equal length. Identical non-zero
    vectors give exactly 1.0; a zero vector has no direction and gives 0.0.
    """
    if len(a) != len(b) or not a:
        raise DimensionMismatchError(f"cannot compare vectors of length {len(a)} and {len(b)}")
    if list(a) == list(b):
        return 1.0 if any(a) else 0.0

    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    # rounding can push |cos| a hair past 1
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))
