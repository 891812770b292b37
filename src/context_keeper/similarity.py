"""Vector similarity primitives and diversity-aware selection (MMR)."""

from __future__ import annotations

from typing import Callable, Sequence, TypeVar

import numpy as np

from .exceptions import DimensionMismatchError

T = TypeVar("T")

EPSILON = 1e-8


def _as_pair(a: Sequence[float], b: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(len(va), len(vb))
    return va, vb


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity with an epsilon-guarded denominator.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va, vb = _as_pair(a, b)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb)) + EPSILON
    return float(np.dot(va, vb)) / denom


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean (L2) distance.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va, vb = _as_pair(a, b)
    return float(np.linalg.norm(va - vb))


def centroid(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean of equally sized vectors; ``[]`` for no input."""
    if not vectors:
        return []
    dim = len(vectors[0])
    for vec in vectors[1:]:
        if len(vec) != dim:
            raise DimensionMismatchError(dim, len(vec))
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()


def diversity_select(
    candidates: Sequence[T],
    query: Sequence[float],
    k: int,
    lambda_: float = 0.7,
    key: Callable[[T], Sequence[float]] | None = None,
) -> list[T]:
    """Maximal Marginal Relevance selection.

    Greedily picks up to ``k`` candidates maximising
    ``lambda_ * rel(c, query) - (1 - lambda_) * max(sim(c, s) for s in selected)``.
    Ties go to the candidate that appears first in ``candidates``. With
    ``lambda_ == 1`` this is plain top-k ranking by relevance.

    Args:
        candidates: Items to choose from (vectors, or objects with ``key``)
        query: Query vector
        k: Maximum number of items to return
        lambda_: Relevance/novelty trade-off in [0, 1]
        key: Extracts the vector from a candidate; identity by default

    Returns:
        Selected items in selection order
    """
    if k <= 0 or not candidates:
        return []

    vectors = [key(c) if key else c for c in candidates]
    relevance = [cosine_similarity(v, query) for v in vectors]

    remaining = list(range(len(candidates)))
    selected: list[int] = []

    while remaining and len(selected) < k:
        best_pos = -1
        best_score = -np.inf

        for pos, idx in enumerate(remaining):
            if selected:
                redundancy = max(
                    cosine_similarity(vectors[idx], vectors[s]) for s in selected
                )
            else:
                redundancy = 0.0
            score = lambda_ * relevance[idx] - (1.0 - lambda_) * redundancy
            if score > best_score:
                best_score = score
                best_pos = pos

        if best_pos < 0:
            break
        selected.append(remaining.pop(best_pos))

    return [candidates[i] for i in selected]
