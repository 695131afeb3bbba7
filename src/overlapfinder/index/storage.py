"""SQLite persistence for documents, chunks and centroids."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence, Set

import numpy as np

from overlapfinder.errors import InvalidEmbeddingError
from overlapfinder.models import ChunkRecord, Document, chunk_point_id

ID_LOOKUP_BATCH = 500


class SQLiteDocumentStore:
    """Relational side of the pipeline: metadata, chunk text and embeddings.

    The connection is shared between threads (Stage 2 workers, the web app)
    and every access goes through a re-entrant lock.
    """

    def __init__(self, db_path: Path, *, dimension: int | None = None) -> None:
        self.db_path = Path(db_path)
        self.dimension = dimension
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    path TEXT UNIQUE,
                    title TEXT NOT NULL,
                    sha256 TEXT,
                    user_id TEXT,
                    metadata TEXT,
                    centroid BLOB,
                    effective_chunk_count INTEGER,
                    total_characters INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    character_count INTEGER NOT NULL,
                    embedding BLOB NOT NULL,
                    UNIQUE(document_id, chunk_index),
                    FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON chunks(document_id)
                """
            )

    def _decode_vector(self, blob: bytes, *, what: str) -> np.ndarray:
        if len(blob) == 0 or len(blob) % 4 != 0:
            raise InvalidEmbeddingError(f"Malformed embedding for {what}")
        vector = np.frombuffer(blob, dtype="float32")
        if self.dimension is not None and vector.shape[0] != self.dimension:
            raise InvalidEmbeddingError(
                f"Embedding for {what} has dimension {vector.shape[0]}, expected {self.dimension}"
            )
        return vector

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        centroid = None
        if row["centroid"] is not None:
            centroid = self._decode_vector(row["centroid"], what=f"document {row['id']} centroid")
        return Document(
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"] or "",
            path=row["path"],
            sha256=row["sha256"],
            user_id=row["user_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            centroid=centroid,
            effective_chunk_count=row["effective_chunk_count"],
            total_characters=row["total_characters"],
        )

    def insert_document(self, document: Document) -> None:
        """Insert document metadata. Should be called within a transaction."""
        columns = ["id", "path", "title", "sha256", "user_id", "metadata"]
        values: List[Any] = [
            document.id,
            document.path,
            document.title,
            document.sha256,
            document.user_id,
            json.dumps(document.metadata, ensure_ascii=True),
        ]
        if document.created_at:
            columns.append("created_at")
            values.append(document.created_at)
        placeholders = ", ".join("?" for _ in columns)
        with self._lock:
            self._conn.execute(
                f"INSERT INTO documents({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )

    def insert_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> None:
        with self._lock:
            for chunk in chunks:
                self._conn.execute(
                    """
                    INSERT INTO chunks(document_id, chunk_index, text, character_count, embedding)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        document_id,
                        chunk.index,
                        chunk.text,
                        chunk.character_count,
                        sqlite3.Binary(np.asarray(chunk.embedding, dtype="float32").tobytes()),
                    ),
                )

    def set_centroid(
        self,
        document_id: str,
        centroid: np.ndarray,
        *,
        effective_chunk_count: int,
        total_characters: int,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE documents
                SET centroid = ?, effective_chunk_count = ?, total_characters = ?
                WHERE id = ?
                """,
                (
                    sqlite3.Binary(np.asarray(centroid, dtype="float32").tobytes()),
                    effective_chunk_count,
                    total_characters,
                    document_id,
                ),
            )

    def get_document(self, document_id: str) -> Document | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return self._row_to_document(row) if row else None

    def get_documents(self, document_ids: Sequence[str]) -> Dict[str, Document]:
        if not document_ids:
            return {}
        placeholders = ", ".join("?" for _ in document_ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM documents WHERE id IN ({placeholders})", list(document_ids)
            ).fetchall()
        return {row["id"]: self._row_to_document(row) for row in rows}

    def existing_ids(self, document_ids: Sequence[str]) -> Set[str]:
        """Subset of ``document_ids`` still present in the store."""
        found: Set[str] = set()
        ids = list(dict.fromkeys(document_ids))
        for start in range(0, len(ids), ID_LOOKUP_BATCH):
            batch = ids[start : start + ID_LOOKUP_BATCH]
            placeholders = ", ".join("?" for _ in batch)
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT id FROM documents WHERE id IN ({placeholders})", batch
                ).fetchall()
            found.update(row["id"] for row in rows)
        return found

    def find_by_path(self, path: str) -> Document | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM documents WHERE path = ?", (path,)
            ).fetchone()
        return self._row_to_document(row) if row else None

    def get_chunks(self, document_id: str) -> List[ChunkRecord]:
        """Chunks of a document ordered by chunk index."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT chunk_index, text, character_count, embedding
                FROM chunks
                WHERE document_id = ?
                ORDER BY chunk_index ASC
                """,
                (document_id,),
            ).fetchall()
        return [
            ChunkRecord(
                document_id=document_id,
                index=row["chunk_index"],
                text=row["text"],
                character_count=row["character_count"],
                embedding=self._decode_vector(
                    row["embedding"], what=chunk_point_id(document_id, row["chunk_index"])
                ),
            )
            for row in rows
        ]

    def chunk_count(self, document_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchone()
        return int(row[0])

    def vector_ids_for_document(self, document_id: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT chunk_index FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,),
            ).fetchall()
        return [chunk_point_id(document_id, row["chunk_index"]) for row in rows]

    def delete_document(self, document_id: str) -> List[str] | None:
        """Delete a document and its chunks.

        Returns the vector ids the document owned (for index cleanup), or
        ``None`` when the document does not exist.
        """
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if not exists:
                return None
            vector_ids = self.vector_ids_for_document(document_id)
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return vector_ids

    def list_documents(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT
                    d.id AS id,
                    d.title AS title,
                    d.path AS path,
                    d.created_at AS created_at,
                    d.effective_chunk_count AS effective_chunk_count,
                    d.total_characters AS total_characters,
                    d.centroid IS NOT NULL AS has_centroid,
                    COUNT(c.id) AS chunk_count
                FROM documents d
                LEFT JOIN chunks c ON c.document_id = d.id
                GROUP BY d.id
                ORDER BY d.created_at ASC, d.title ASC, d.id ASC
                """
            ).fetchall()
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "path": row["path"],
                "created_at": row["created_at"],
                "effective_chunk_count": row["effective_chunk_count"],
                "total_characters": row["total_characters"],
                "has_centroid": bool(row["has_centroid"]),
                "chunk_count": row["chunk_count"],
            }
            for row in rows
        ]

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            documents = self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            chunks = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            characters = self._conn.execute(
                "SELECT COALESCE(SUM(character_count), 0) FROM chunks"
            ).fetchone()[0]
        return {
            "document_count": int(documents),
            "chunk_count": int(chunks),
            "total_characters": int(characters),
        }
