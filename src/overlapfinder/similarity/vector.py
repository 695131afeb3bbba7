"""Cosine similarity helpers.

Convention: the cosine similarity involving a zero-magnitude vector is 0.0,
both in the scalar and in the matrix form, so every score is a real number
and scores are totally ordered.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from overlapfinder.errors import InvalidEmbeddingError


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    vector = np.asarray(values, dtype="float32")
    if vector.ndim != 1 or vector.size == 0:
        raise InvalidEmbeddingError(f"Expected a non-empty 1-d vector, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise InvalidEmbeddingError("Vector contains non-finite values")
    return vector


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype="float32")
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return np.zeros_like(vector)
    return vector / norm


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype="float32")
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return np.where(norms == 0.0, 0.0, matrix / safe).astype("float32", copy=False)


def cosine_similarity(vec_a: Sequence[float] | np.ndarray, vec_b: Sequence[float] | np.ndarray) -> float:
    a = np.asarray(vec_a, dtype="float64")
    b = np.asarray(vec_b, dtype="float64")
    if a.shape != b.shape:
        raise ValueError(f"Vector length mismatch: {a.shape} vs {b.shape}")
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def cosine_matrix(source: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarities, shape ``(len(source), len(target))``."""
    source = np.atleast_2d(np.asarray(source, dtype="float32"))
    target = np.atleast_2d(np.asarray(target, dtype="float32"))
    if source.shape[1] != target.shape[1]:
        raise ValueError(
            f"Embedding dimension mismatch: {source.shape[1]} vs {target.shape[1]}"
        )
    return normalize_rows(source) @ normalize_rows(target).T


def compute_centroid(embeddings: np.ndarray) -> np.ndarray:
    """Mean of the chunk embeddings, L2-normalized."""
    matrix = np.atleast_2d(np.asarray(embeddings, dtype="float32"))
    if matrix.size == 0:
        raise InvalidEmbeddingError("Cannot compute a centroid without embeddings")
    return l2_normalize(matrix.mean(axis=0))
