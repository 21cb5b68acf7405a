"""Bounded cosine similarity between embedding vectors."""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from focusml_mcp.exceptions import DimensionMismatchError

Vector = Union[np.ndarray, Sequence[float]]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity of two vectors, clamped into [0, 1].

    Negative cosine maps to 0 and floating-point overshoot above 1 maps
    to 1. A zero-norm operand yields 0 rather than an error.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])

    denominator = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0

    return float(min(1.0, max(0.0, float(np.dot(va, vb)) / denominator)))
