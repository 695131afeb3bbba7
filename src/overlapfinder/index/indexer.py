"""Document indexing pipeline: text -> chunks -> embeddings -> store + index."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

import numpy as np

from overlapfinder.cleanup.worker import CleanupWorker
from overlapfinder.embedding.encoder import EmbeddingModel
from overlapfinder.errors import DocumentNotFoundError, DocumentNotReadyError
from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.index.vectors import VectorIndex, VectorPoint
from overlapfinder.ingestion.loader import extract_text
from overlapfinder.models import ChunkRecord, Document
from overlapfinder.similarity.vector import compute_centroid
from overlapfinder.utils.files import compute_sha256, iter_document_paths
from overlapfinder.utils.text import chunk_text, count_characters

LOGGER = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 32


def backfill_centroid(store: SQLiteDocumentStore, document_id: str) -> Document:
    """Recompute centroid, effective chunk count and total characters from stored chunks."""
    if store.get_document(document_id) is None:
        raise DocumentNotFoundError(document_id)
    chunks = store.get_chunks(document_id)
    if not chunks:
        raise DocumentNotReadyError(document_id, "no stored chunks")
    centroid = compute_centroid(np.vstack([chunk.embedding for chunk in chunks]))
    with store.transaction():
        store.set_centroid(
            document_id,
            centroid,
            effective_chunk_count=len(chunks),
            total_characters=sum(chunk.character_count for chunk in chunks),
        )
    LOGGER.info("Backfilled centroid for %s (%s chunks)", document_id, len(chunks))
    return store.get_document(document_id)  # type: ignore[return-value]


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    processed_files: list[Path] = field(default_factory=list)

    def increment(self, status: str, path: Path) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


class Indexer:
    """Coordinates document ingestion, centroid computation and vector upserts."""

    def __init__(
        self,
        embedder: EmbeddingModel,
        store: SQLiteDocumentStore,
        index: VectorIndex,
        *,
        cleanup: CleanupWorker | None = None,
        chunk_chars: int = 1200,
        overlap: int = 0,
        min_chunk_chars: int = 40,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.index = index
        self.cleanup = cleanup
        self.chunk_chars = chunk_chars
        self.overlap = overlap
        self.min_chunk_chars = min_chunk_chars

    def index_paths(self, paths: Sequence[Path], *, user_id: str | None = None) -> IndexStats:
        """Index every supported file found under the given paths."""
        files = list(iter_document_paths(paths))
        stats = IndexStats()
        if not files:
            LOGGER.warning("No indexable files found")
            return stats

        for path in files:
            try:
                LOGGER.info("Processing: %s", path)
                stats.increment(self.index_file(path, user_id=user_id), path)
            except Exception as exc:
                LOGGER.error("Failed to process %s: %s", path, exc)
                stats.increment("failed", path)
        return stats

    def index_file(self, path: Path, *, user_id: str | None = None) -> str:
        sha256 = compute_sha256(path)
        existing = self.store.find_by_path(str(path))
        if existing is not None and existing.sha256 == sha256:
            return "skipped"

        extracted = extract_text(path)
        if not extracted.text:
            LOGGER.warning("No text extracted from %s", path)
            return "skipped"

        if existing is not None:
            self.remove_document(existing.id)

        metadata: Dict[str, Any] = {}
        if extracted.page_count is not None:
            metadata["page_count"] = extracted.page_count
        document = self.index_text(
            extracted.title,
            extracted.text,
            path=str(path),
            sha256=sha256,
            user_id=user_id,
            metadata=metadata,
        )
        return "skipped" if document is None else ("updated" if existing else "inserted")

    def index_text(
        self,
        title: str,
        text: str,
        *,
        path: str | None = None,
        sha256: str | None = None,
        user_id: str | None = None,
        metadata: Dict[str, Any] | None = None,
        document_id: str | None = None,
        created_at: str = "",
    ) -> Document | None:
        """Chunk, embed and persist one document; ``None`` when nothing survives chunking."""
        pieces = [
            piece
            for piece in chunk_text(text, max_chars=self.chunk_chars, overlap=self.overlap)
            if count_characters(piece) >= self.min_chunk_chars
        ]
        if not pieces:
            LOGGER.warning("No chunk of %r reaches %s characters", title, self.min_chunk_chars)
            return None

        embeddings = self._embed(pieces)
        document = Document(
            id=document_id or uuid.uuid4().hex,
            title=title,
            created_at=created_at,
            path=path,
            sha256=sha256,
            user_id=user_id,
            metadata=dict(metadata or {}),
        )
        chunks = [
            ChunkRecord(
                document_id=document.id,
                index=position,
                text=piece,
                character_count=count_characters(piece),
                embedding=embeddings[position],
            )
            for position, piece in enumerate(pieces)
        ]
        centroid = compute_centroid(embeddings)
        total_characters = sum(chunk.character_count for chunk in chunks)

        with self.store.transaction():
            self.store.insert_document(document)
            self.store.insert_chunks(document.id, chunks)
            self.store.set_centroid(
                document.id,
                centroid,
                effective_chunk_count=len(chunks),
                total_characters=total_characters,
            )

        self.index.upsert([self._point(document, chunk) for chunk in chunks])
        LOGGER.info("Indexed %r as %s (%s chunks)", title, document.id, len(chunks))
        stored = self.store.get_document(document.id)
        return stored if stored is not None else document

    def remove_document(self, document_id: str) -> bool:
        """Delete from the store now; vectors go through the cleanup worker when present."""
        vector_ids = self.store.delete_document(document_id)
        if vector_ids is None:
            return False
        if self.cleanup is not None:
            self.cleanup.enqueue(document_id, vector_ids)
        elif vector_ids:
            self.index.delete_points(vector_ids)
        else:
            self.index.delete_document(document_id)
        return True

    def _embed(self, pieces: List[str]) -> np.ndarray:
        batches = [
            self.embedder.embed(pieces[start : start + EMBED_BATCH_SIZE])
            for start in range(0, len(pieces), EMBED_BATCH_SIZE)
        ]
        return np.vstack(batches).astype("float32", copy=False)

    @staticmethod
    def _point(document: Document, chunk: ChunkRecord) -> VectorPoint:
        payload: Dict[str, Any] = {
            key: value
            for key, value in document.metadata.items()
            if isinstance(value, (str, int, float, bool))
        }
        payload.update(
            {
                "document_id": document.id,
                "chunk_index": chunk.index,
                "title": document.title,
            }
        )
        if document.user_id is not None:
            payload["user_id"] = document.user_id
        return VectorPoint(id=chunk.id, vector=chunk.embedding, payload=payload)
