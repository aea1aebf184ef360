"""Vector similarity helpers."""

from __future__ import annotations

from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Returns ``0.0`` when either vector has zero magnitude. Vectors of different
    lengths raise ``ValueError``.
    """

    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    if left.shape != right.shape:
        raise ValueError(f"Vectors must have the same length ({left.size} != {right.size})")
    norm = float(np.linalg.norm(left)) * float(np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def normalize(vector: Sequence[float]) -> tuple[float, ...]:
    """Scale ``vector`` to unit length; zero vectors are returned unchanged."""

    values = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(values))
    if norm == 0.0:
        return tuple(values.tolist())
    return tuple((values / norm).tolist())


__all__ = ["cosine_similarity", "normalize"]
