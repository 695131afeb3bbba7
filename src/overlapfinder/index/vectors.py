"""Vector index backends.

The similarity pipeline only talks to the :class:`VectorIndex` protocol. The
default backend keeps chunk vectors in SQLite and ranks them with a numpy
dot product; :mod:`overlapfinder.index.qdrant` provides a Qdrant backend.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Protocol, Sequence

import numpy as np

from overlapfinder.index.filters import FilterNode
from overlapfinder.models import SearchHit
from overlapfinder.similarity.vector import as_vector, l2_normalize

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class VectorPoint:
    id: str
    vector: np.ndarray
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        *,
        limit: int,
        query_filter: FilterNode | None = None,
    ) -> List[SearchHit]: ...

    def upsert(self, points: Sequence[VectorPoint]) -> None: ...

    def delete_points(self, ids: Sequence[str]) -> None: ...

    def delete_document(self, document_id: str) -> None: ...


def rank_hits(ids: Sequence[str], scores: np.ndarray, limit: int) -> List[int]:
    """Indices of the ``limit`` best scores, score desc then id asc."""
    if limit <= 0 or len(ids) == 0:
        return []
    if limit < len(scores):
        # keep every score tied with the cutoff so the id tie-break stays total
        cutoff = np.partition(scores, -limit)[-limit]
        pool = np.flatnonzero(scores >= cutoff)
    else:
        pool = np.arange(len(scores))
    ordered = sorted(pool.tolist(), key=lambda idx: (-float(scores[idx]), ids[idx]))
    return ordered[:limit]


class SQLiteVectorIndex:
    """Brute-force cosine index persisted in a SQLite table."""

    def __init__(self, db_path: Path, *, collection: str = "documents") -> None:
        self.db_path = Path(db_path)
        self.collection = collection
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def table(self) -> str:
        return f"points_{self.collection}"

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
        if not self.collection.replace("_", "").isalnum():
            raise ValueError(f"Invalid collection name: {self.collection!r}")
        with self.transaction() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id TEXT PRIMARY KEY,
                    document_id TEXT,
                    vector BLOB NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                f"""CREATE INDEX IF NOT EXISTS idx_{self.table}_document_id
                    ON {self.table}(document_id)
                """
            )

    def upsert(self, points: Sequence[VectorPoint]) -> None:
        with self.transaction() as conn:
            for point in points:
                vector = l2_normalize(as_vector(point.vector))
                conn.execute(
                    f"""
                    INSERT INTO {self.table}(id, document_id, vector, payload)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        document_id = excluded.document_id,
                        vector = excluded.vector,
                        payload = excluded.payload
                    """,
                    (
                        point.id,
                        point.payload.get("document_id"),
                        sqlite3.Binary(vector.tobytes()),
                        json.dumps(point.payload, ensure_ascii=True, sort_keys=True),
                    ),
                )

    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        *,
        limit: int,
        query_filter: FilterNode | None = None,
    ) -> List[SearchHit]:
        query = l2_normalize(as_vector(vector))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, vector, payload FROM {self.table}"
            ).fetchall()

        ids: List[str] = []
        payloads: List[Dict[str, Any]] = []
        vectors: List[np.ndarray] = []
        for row in rows:
            payload = json.loads(row["payload"])
            if query_filter is not None and not query_filter.matches(payload):
                continue
            stored = np.frombuffer(row["vector"], dtype="float32")
            if stored.shape != query.shape:
                LOGGER.warning("Skipping point %s with dimension %s", row["id"], stored.shape)
                continue
            ids.append(row["id"])
            payloads.append(payload)
            vectors.append(stored)

        if not vectors:
            return []

        scores = np.vstack(vectors) @ query
        return [
            SearchHit(id=ids[idx], score=float(scores[idx]), payload=payloads[idx])
            for idx in rank_hits(ids, scores, limit)
        ]

    def delete_points(self, ids: Sequence[str]) -> None:
        with self.transaction() as conn:
            conn.executemany(
                f"DELETE FROM {self.table} WHERE id = ?", [(point_id,) for point_id in ids]
            )

    def delete_document(self, document_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(f"DELETE FROM {self.table} WHERE document_id = ?", (document_id,))

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0])
