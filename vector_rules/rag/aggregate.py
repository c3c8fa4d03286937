"""
Aggregation of several query embeddings into one representative vector.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from vector_rules.errors import DimensionMismatch, InvalidInput


def average_embeddings(vectors: Sequence[Sequence[float]]) -> list[float]:
    """
    Component-wise arithmetic mean of equally sized vectors.

    The mean is not re-normalized; cosine ranking is scale invariant.

    Raises:
        InvalidInput: No vectors, or zero-length vectors
        DimensionMismatch: A vector's length differs from the first one's
    """
    if not vectors:
        raise InvalidInput("embeddings cannot be empty")

    dimensions = len(vectors[0])
    if dimensions == 0:
        raise InvalidInput("embeddings cannot be zero-length")

    for i, vec in enumerate(vectors):
        if len(vec) != dimensions:
            raise DimensionMismatch(
                f"embedding {i} has different dimensions: "
                f"expected {dimensions}, got {len(vec)}",
                expected=dimensions,
                actual=len(vec),
                index=i,
            )

    matrix = np.asarray(vectors, dtype=np.float64)
    return matrix.mean(axis=0).tolist()
