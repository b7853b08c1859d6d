"""Similarity scoring shared by retrieval ranking and duplicate detection."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity over the shared prefix ``min(len(a), len(b))``.

    Returns 0.0 when either prefix has zero magnitude, so a missing or
    all-zero vector never matches anything.
    """
    length = min(len(a), len(b))
    if length == 0:
        return 0.0
    va = np.asarray(a[:length], dtype=np.float64)
    vb = np.asarray(b[:length], dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)
