"""Tests for the vector index backends."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

from overlapfinder.index.filters import Eq, In, MatchNone, Ne, conjunction
from overlapfinder.index.qdrant import QdrantVectorIndex, qdrant_point_id, to_qdrant_filter
from overlapfinder.index.vectors import SQLiteVectorIndex, VectorPoint, rank_hits


def _point(point_id: str, vector, document_id: str, **payload) -> VectorPoint:
    return VectorPoint(
        id=point_id,
        vector=np.asarray(vector, dtype="float32"),
        payload={"document_id": document_id, **payload},
    )


class TestRankHits:
    def test_orders_by_score_then_id(self) -> None:
        ids = ["c", "a", "b"]
        scores = np.array([0.5, 0.9, 0.9])
        assert rank_hits(ids, scores, 3) == [1, 2, 0]

    def test_ties_at_cutoff_resolved_by_id(self) -> None:
        ids = ["z", "y", "x"]
        scores = np.array([0.7, 0.7, 0.7])
        assert rank_hits(ids, scores, 2) == [2, 1]

    def test_zero_limit(self) -> None:
        assert rank_hits(["a"], np.array([1.0]), 0) == []


class TestSQLiteVectorIndex:
    def test_search_ranks_by_cosine(self, tmp_path: Path) -> None:
        index = SQLiteVectorIndex(tmp_path / "vectors.db")
        index.upsert(
            [
                _point("a_chunk_0", [1.0, 0.0], "a"),
                _point("b_chunk_0", [0.6, 0.8], "b"),
                _point("c_chunk_0", [0.0, 1.0], "c"),
            ]
        )
        hits = index.search([2.0, 0.0], limit=2)
        assert [hit.id for hit in hits] == ["a_chunk_0", "b_chunk_0"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == pytest.approx(0.6)
        assert hits[0].payload["document_id"] == "a"
        index.close()

    def test_search_applies_filter(self, tmp_path: Path) -> None:
        index = SQLiteVectorIndex(tmp_path / "vectors.db")
        index.upsert(
            [
                _point("a_chunk_0", [1.0, 0.0], "a", user_id="u1"),
                _point("b_chunk_0", [1.0, 0.1], "b", user_id="u2"),
            ]
        )
        hits = index.search([1.0, 0.0], limit=5, query_filter=Eq("user_id", "u2"))
        assert [hit.id for hit in hits] == ["b_chunk_0"]
        assert index.search([1.0, 0.0], limit=5, query_filter=MatchNone()) == []
        index.close()

    def test_upsert_replaces_point(self, tmp_path: Path) -> None:
        index = SQLiteVectorIndex(tmp_path / "vectors.db")
        index.upsert([_point("a_chunk_0", [1.0, 0.0], "a")])
        index.upsert([_point("a_chunk_0", [0.0, 1.0], "a")])
        assert index.count() == 1
        assert index.search([0.0, 1.0], limit=1)[0].score == pytest.approx(1.0)
        index.close()

    def test_delete_points_and_document(self, tmp_path: Path) -> None:
        index = SQLiteVectorIndex(tmp_path / "vectors.db")
        index.upsert(
            [
                _point("a_chunk_0", [1.0, 0.0], "a"),
                _point("a_chunk_1", [0.0, 1.0], "a"),
                _point("b_chunk_0", [1.0, 1.0], "b"),
            ]
        )
        index.delete_points(["a_chunk_0"])
        assert index.count() == 2
        index.delete_document("a")
        assert [hit.id for hit in index.search([1.0, 1.0], limit=10)] == ["b_chunk_0"]
        index.close()

    def test_invalid_collection_name(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            SQLiteVectorIndex(tmp_path / "vectors.db", collection="bad name;")


class TestQdrantFilter:
    def test_empty_filter(self) -> None:
        assert to_qdrant_filter(None) is None

    def test_must_and_must_not(self) -> None:
        node = conjunction([Eq("user_id", "u1"), In("lang", ("en", "it")), Ne("document_id", "src")])
        qfilter = to_qdrant_filter(node)
        assert [condition.key for condition in qfilter.must] == ["user_id", "lang"]
        assert qfilter.must[0].match.value == "u1"
        assert qfilter.must[1].match.any == ["en", "it"]
        assert qfilter.must_not[0].key == "document_id"
        assert qfilter.must_not[0].match.value == "src"

    def test_match_none_is_unsatisfiable(self) -> None:
        qfilter = to_qdrant_filter(MatchNone())
        assert qfilter.must[0].key == "document_id"


class TestQdrantVectorIndex:
    def test_point_id_is_stable_uuid(self) -> None:
        assert qdrant_point_id("a_chunk_0") == qdrant_point_id("a_chunk_0")
        assert qdrant_point_id("a_chunk_0") != qdrant_point_id("a_chunk_1")

    def test_search_maps_points(self) -> None:
        client = MagicMock()
        scored = MagicMock(id="uuid-1", score=0.93, payload={"document_id": "a", "point_id": "a_chunk_0"})
        client.query_points.return_value = MagicMock(points=[scored])
        index = QdrantVectorIndex(client, collection="docs")

        hits = index.search([1.0, 0.0], limit=5, query_filter=Eq("user_id", "u1"))

        assert hits[0].id == "a_chunk_0"
        assert hits[0].score == pytest.approx(0.93)
        kwargs = client.query_points.call_args.kwargs
        assert kwargs["collection_name"] == "docs"
        assert kwargs["limit"] == 5
        assert kwargs["query_filter"].must[0].key == "user_id"

    def test_upsert_creates_collection_and_keeps_point_id(self) -> None:
        client = MagicMock()
        client.collection_exists.return_value = False
        index = QdrantVectorIndex(client, collection="docs")

        index.upsert([_point("a_chunk_0", [1.0, 0.0, 0.0], "a")])

        assert client.create_collection.call_args.kwargs["vectors_config"].size == 3
        point = client.upsert.call_args.kwargs["points"][0]
        assert point.id == qdrant_point_id("a_chunk_0")
        assert point.payload["point_id"] == "a_chunk_0"

    def test_delete_points_batches(self) -> None:
        client = MagicMock()
        index = QdrantVectorIndex(client, collection="docs")
        index.delete_points([f"a_chunk_{i}" for i in range(2500)])
        assert client.delete.call_count == 3

    def test_delete_document_uses_filter(self) -> None:
        client = MagicMock()
        index = QdrantVectorIndex(client, collection="docs")
        index.delete_document("a")
        selector = client.delete.call_args.kwargs["points_selector"]
        assert selector.filter.must[0].match.value == "a"
