"""Shared fixtures: a temporary store/index pair and a document builder."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Sequence, Tuple

import numpy as np
import pytest

from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.index.vectors import SQLiteVectorIndex, VectorPoint
from overlapfinder.models import ChunkRecord, Document
from overlapfinder.similarity.vector import compute_centroid
from overlapfinder.utils.text import count_characters

ChunkSpec = Tuple[str, Sequence[float]]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def store(db_path: Path):
    store = SQLiteDocumentStore(db_path)
    yield store
    store.close()


@pytest.fixture
def vector_index(db_path: Path):
    index = SQLiteVectorIndex(db_path)
    yield index
    index.close()


@pytest.fixture
def add_document(store: SQLiteDocumentStore, vector_index: SQLiteVectorIndex) -> Callable[..., Document]:
    """Persist a document from ``(text, embedding)`` pairs, like the indexer does."""

    def _add(
        document_id: str,
        chunks: List[ChunkSpec],
        *,
        title: str | None = None,
        created_at: str = "2024-01-01 00:00:00",
        user_id: str | None = None,
        ready: bool = True,
    ) -> Document:
        document = Document(
            id=document_id,
            title=title or document_id,
            created_at=created_at,
            path=f"/docs/{document_id}.txt",
            user_id=user_id,
        )
        records = [
            ChunkRecord(
                document_id=document_id,
                index=position,
                text=text,
                character_count=count_characters(text),
                embedding=np.asarray(embedding, dtype="float32"),
            )
            for position, (text, embedding) in enumerate(chunks)
        ]
        with store.transaction():
            store.insert_document(document)
            store.insert_chunks(document_id, records)
            if ready and records:
                store.set_centroid(
                    document_id,
                    compute_centroid(np.vstack([record.embedding for record in records])),
                    effective_chunk_count=len(records),
                    total_characters=sum(record.character_count for record in records),
                )

        points = []
        for record in records:
            payload = {"document_id": document_id, "chunk_index": record.index, "title": document.title}
            if user_id is not None:
                payload["user_id"] = user_id
            points.append(VectorPoint(id=record.id, vector=record.embedding, payload=payload))
        vector_index.upsert(points)
        return store.get_document(document_id)

    return _add
