"""Vector math shared by search, classification and tagging."""

import numpy as np

from errors import DimensionMismatch


def as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).reshape(-1)


def normalize(vec: np.ndarray) -> np.ndarray:
    """L2-normalise a vector. A zero vector is returned unchanged."""
    vec = as_vector(vec)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return (vec / norm).astype(np.float32)


def cosine_similarity(a, b) -> float:
    a = as_vector(a)
    b = as_vector(b)
    if a.shape != b.shape:
        raise DimensionMismatch(len(a), len(b))
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a.astype(np.float64), b.astype(np.float64)) / denom)


def similarities(query, candidates) -> np.ndarray:
    """Cosine similarity of one query against each row of candidates. Returns (N,) float32."""
    query = as_vector(query)
    if len(candidates) == 0:
        return np.zeros(0, dtype=np.float32)
    if not isinstance(candidates, np.ndarray):
        for row in candidates:
            if np.size(row) != query.shape[0]:
                raise DimensionMismatch(query.shape[0], int(np.size(row)))
    matrix = np.asarray(candidates, dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
        actual = matrix.shape[-1] if matrix.ndim else 0
        raise DimensionMismatch(query.shape[0], actual)

    q_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ query
    out = np.zeros(len(matrix), dtype=np.float32)
    nonzero = denom > 0
    out[nonzero] = dots[nonzero] / denom[nonzero]
    return out


def top_n(scores: np.ndarray, n: int, threshold: float | None = None) -> list[int]:
    """Indices of the n highest scores, best first.

    Equal scores keep their original order. Scores below threshold are dropped.
    """
    scores = np.asarray(scores)
    if n <= 0 or scores.size == 0:
        return []
    order = np.argsort(-scores, kind="stable")
    picked = []
    for idx in order[:n]:
        if threshold is not None and scores[idx] < threshold:
            break
        picked.append(int(idx))
    return picked


def average_embedding(vectors) -> np.ndarray:
    """Mean of the given vectors, L2-normalised. Used for prototypes and video frames."""
    matrix = np.asarray(vectors, dtype=np.float32)
    if matrix.ndim != 2 or len(matrix) == 0:
        raise ValueError("Cannot average an empty set of embeddings")
    return normalize(matrix.mean(axis=0))
