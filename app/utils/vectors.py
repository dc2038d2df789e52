# app/utils/vectors.py
from typing import Iterable, List, Sequence

import numpy as np


def as_vector(values: Sequence[float]) -> np.ndarray:
    v = np.asarray(values, dtype="float64").reshape(-1)
    if v.size == 0 or not np.all(np.isfinite(v)):
        raise ValueError("Vector must be non-empty and finite")
    return v


def l2_normalize(values: Sequence[float]) -> List[float]:
    v = as_vector(values)
    n = np.linalg.norm(v)
    if n <= 1e-12:
        raise ValueError("Cannot normalize a zero vector")
    return (v / n).tolist()


def centroid(vectors: Iterable[Sequence[float]]) -> np.ndarray:
    """Dimension-wise mean; every vector must have the same length."""
    rows = [as_vector(v) for v in vectors]
    if not rows:
        raise ValueError("Centroid of an empty set")
    dims = {r.shape[0] for r in rows}
    if len(dims) != 1:
        raise ValueError(f"Mixed vector dimensions: {sorted(dims)}")
    return np.vstack(rows).mean(axis=0)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va, vb = as_vector(a), as_vector(b)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    na, nb = np.linalg.norm(va), np.linalg.norm(vb)
    if na <= 1e-12 or nb <= 1e-12:
        return 0.0
    sim = float(va @ vb / (na * nb))
    return max(-1.0, min(1.0, sim))


def similarity_to_score(similarity: float) -> float:
    """Map cosine similarity in [-1, 1] onto [0, 100]."""
    return round((similarity + 1.0) / 2.0 * 100.0, 2)
