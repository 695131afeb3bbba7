"""Core OverlapFinder data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np


def chunk_point_id(document_id: str, index: int) -> str:
    """Identifier of a chunk, shared by the store and the vector index."""
    return f"{document_id}_chunk_{index}"


@dataclass(slots=True)
class Document:
    """A document as persisted in the relational store."""

    id: str
    title: str
    created_at: str = ""
    path: str | None = None
    sha256: str | None = None
    user_id: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    centroid: np.ndarray | None = None
    effective_chunk_count: int | None = None
    total_characters: int | None = None

    @property
    def is_ready(self) -> bool:
        return (
            self.centroid is not None
            and self.centroid.size > 0
            and bool(self.effective_chunk_count)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "path": self.path,
            "user_id": self.user_id,
            "metadata": self.metadata,
            "effective_chunk_count": self.effective_chunk_count,
            "total_characters": self.total_characters,
        }


@dataclass(slots=True)
class ChunkRecord:
    """Chunk of document text paired with its embedding."""

    document_id: str
    index: int
    text: str
    character_count: int
    embedding: np.ndarray

    @property
    def id(self) -> str:
        return chunk_point_id(self.document_id, self.index)


@dataclass(slots=True)
class Candidate:
    document_id: str
    score: float


@dataclass(slots=True)
class SearchHit:
    """One ranked row returned by a vector index."""

    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkMatch:
    """Accepted pairing of a source chunk with its best target chunk."""

    source_chunk_id: str
    source_index: int
    target_chunk_id: str
    target_index: int
    similarity: float
    jaccard: float
    source_characters: int
    target_characters: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_chunk_id": self.source_chunk_id,
            "source_index": self.source_index,
            "target_chunk_id": self.target_chunk_id,
            "target_index": self.target_index,
            "similarity": self.similarity,
            "jaccard": self.jaccard,
            "source_characters": self.source_characters,
            "target_characters": self.target_characters,
        }


@dataclass(slots=True)
class SimilarityScores:
    """Coverage scores for one source/target document pair."""

    source_score: float
    target_score: float
    matched_source_characters: int
    matched_target_characters: int
    total_source_characters: int
    total_target_characters: int
    average_jaccard: float | None = None
    min_jaccard: float | None = None
    max_jaccard: float | None = None

    @property
    def length_ratio(self) -> float | None:
        if not self.total_source_characters or not self.total_target_characters:
            return None
        return self.total_source_characters / self.total_target_characters * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_score": self.source_score,
            "target_score": self.target_score,
            "matched_source_characters": self.matched_source_characters,
            "matched_target_characters": self.matched_target_characters,
            "total_source_characters": self.total_source_characters,
            "total_target_characters": self.total_target_characters,
            "average_jaccard": self.average_jaccard,
            "min_jaccard": self.min_jaccard,
            "max_jaccard": self.max_jaccard,
            "length_ratio": self.length_ratio,
        }
