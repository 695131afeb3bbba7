"""Tests for SQLiteDocumentStore."""

import sqlite3

import numpy as np
import pytest

from overlapfinder.errors import InvalidEmbeddingError
from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.models import ChunkRecord, Document


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database for testing."""
    db_path = tmp_path / "test.db"
    store = SQLiteDocumentStore(db_path, dimension=4)
    yield store
    store.close()


def _chunks(document_id, texts, dimension=4):
    rng = np.random.default_rng(0)
    return [
        ChunkRecord(
            document_id=document_id,
            index=i,
            text=text,
            character_count=len(text),
            embedding=rng.random(dimension).astype("float32"),
        )
        for i, text in enumerate(texts)
    ]


def _insert(store, document, texts):
    chunks = _chunks(document.id, texts)
    with store.transaction():
        store.insert_document(document)
        store.insert_chunks(document.id, chunks)
        store.set_centroid(
            document.id,
            np.ones(4, dtype="float32") / 2,
            effective_chunk_count=len(chunks),
            total_characters=sum(chunk.character_count for chunk in chunks),
        )
    return chunks


class TestSchema:
    """Test initialization and schema."""

    def test_init_creates_database(self, tmp_path):
        db_path = tmp_path / "new.db"
        assert not db_path.exists()

        store = SQLiteDocumentStore(db_path, dimension=4)

        assert db_path.exists()
        assert store.db_path == db_path
        assert store.dimension == 4
        store.close()

    def test_schema_creation(self, temp_db):
        conn = temp_db.connection
        for table in ("documents", "chunks"):
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
            )
            assert cursor.fetchone() is not None

        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='index' AND name='idx_chunks_document_id'"
        )
        assert cursor.fetchone() is not None

    def test_pragma_settings(self, temp_db):
        conn = temp_db.connection
        assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
        assert conn.execute("PRAGMA synchronous").fetchone()[0] == 1  # NORMAL mode

    def test_close(self, tmp_path):
        store = SQLiteDocumentStore(tmp_path / "close_test.db")
        conn = store.connection

        store.close()

        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")


class TestTransaction:
    def test_rollback_on_exception(self, temp_db):
        with pytest.raises(ValueError):
            with temp_db.transaction():
                temp_db.insert_document(Document(id="doc", title="Doc"))
                raise ValueError("Test error")

        assert temp_db.get_document("doc") is None


class TestDocuments:
    def test_roundtrip(self, temp_db):
        document = Document(
            id="doc-1",
            title="Prospectus",
            created_at="2024-03-01 10:00:00",
            path="/docs/prospectus.pdf",
            sha256="abc123",
            user_id="u1",
            metadata={"page_count": 3},
        )
        chunks = _insert(temp_db, document, ["First chunk", "Second chunk"])

        stored = temp_db.get_document("doc-1")
        assert stored.title == "Prospectus"
        assert stored.created_at == "2024-03-01 10:00:00"
        assert stored.user_id == "u1"
        assert stored.metadata == {"page_count": 3}
        assert stored.effective_chunk_count == 2
        assert stored.total_characters == sum(chunk.character_count for chunk in chunks)
        assert stored.centroid.shape == (4,)
        assert stored.is_ready

    def test_created_at_defaults_to_insert_time(self, temp_db):
        temp_db.insert_document(Document(id="doc", title="Doc"))
        assert temp_db.get_document("doc").created_at != ""

    def test_missing_document(self, temp_db):
        assert temp_db.get_document("missing") is None
        assert temp_db.find_by_path("/nowhere") is None

    def test_find_by_path(self, temp_db):
        _insert(temp_db, Document(id="doc", title="Doc", path="/docs/a.txt"), ["Text"])
        assert temp_db.find_by_path("/docs/a.txt").id == "doc"

    def test_get_documents(self, temp_db):
        _insert(temp_db, Document(id="a", title="A", path="/a"), ["Text"])
        _insert(temp_db, Document(id="b", title="B", path="/b"), ["Text"])
        found = temp_db.get_documents(["a", "b", "missing"])
        assert set(found) == {"a", "b"}
        assert temp_db.get_documents([]) == {}

    def test_document_without_centroid_is_not_ready(self, temp_db):
        temp_db.insert_document(Document(id="doc", title="Doc"))
        assert not temp_db.get_document("doc").is_ready


class TestChunks:
    def test_get_chunks_ordered(self, temp_db):
        document = Document(id="doc", title="Doc")
        chunks = _insert(temp_db, document, ["zero", "one", "two"])

        stored = temp_db.get_chunks("doc")

        assert [chunk.index for chunk in stored] == [0, 1, 2]
        assert [chunk.text for chunk in stored] == ["zero", "one", "two"]
        assert stored[1].id == "doc_chunk_1"
        np.testing.assert_allclose(stored[2].embedding, chunks[2].embedding)
        assert temp_db.chunk_count("doc") == 3

    def test_wrong_dimension_raises(self, temp_db):
        temp_db.insert_document(Document(id="doc", title="Doc"))
        temp_db.insert_chunks(
            "doc",
            [
                ChunkRecord(
                    document_id="doc",
                    index=0,
                    text="text",
                    character_count=4,
                    embedding=np.ones(3, dtype="float32"),
                )
            ],
        )
        with pytest.raises(InvalidEmbeddingError):
            temp_db.get_chunks("doc")

    def test_vector_ids(self, temp_db):
        _insert(temp_db, Document(id="doc", title="Doc"), ["a", "b"])
        assert temp_db.vector_ids_for_document("doc") == ["doc_chunk_0", "doc_chunk_1"]


class TestDeleteDocument:
    def test_delete_returns_vector_ids(self, temp_db):
        _insert(temp_db, Document(id="doc", title="Doc"), ["a", "b"])

        vector_ids = temp_db.delete_document("doc")

        assert vector_ids == ["doc_chunk_0", "doc_chunk_1"]
        assert temp_db.get_document("doc") is None
        assert temp_db.chunk_count("doc") == 0

    def test_delete_missing_returns_none(self, temp_db):
        assert temp_db.delete_document("missing") is None


class TestExistingIds:
    def test_returns_only_stored_documents(self, temp_db):
        _insert(temp_db, Document(id="a", title="A"), ["x"])
        _insert(temp_db, Document(id="b", title="B", path="/b"), ["y"])
        temp_db.delete_document("b")

        assert temp_db.existing_ids(["a", "b", "missing", "a"]) == {"a"}

    def test_empty_input(self, temp_db):
        assert temp_db.existing_ids([]) == set()

    def test_large_lookup_is_batched(self, temp_db):
        _insert(temp_db, Document(id="doc-0", title="Doc"), ["x"])
        ids = [f"doc-{i}" for i in range(1200)]

        assert temp_db.existing_ids(ids) == {"doc-0"}


class TestListAndStats:
    def test_list_documents(self, temp_db):
        _insert(temp_db, Document(id="a", title="A", created_at="2024-01-01", path="/a"), ["xx"])
        temp_db.insert_document(Document(id="b", title="B", created_at="2024-01-02", path="/b"))

        rows = temp_db.list_documents()

        assert [row["id"] for row in rows] == ["a", "b"]
        assert rows[0]["has_centroid"] is True
        assert rows[0]["chunk_count"] == 1
        assert rows[1]["has_centroid"] is False
        assert rows[1]["chunk_count"] == 0

    def test_stats(self, temp_db):
        _insert(temp_db, Document(id="a", title="A"), ["abc", "de"])
        assert temp_db.get_stats() == {
            "document_count": 1,
            "chunk_count": 2,
            "total_characters": 5,
        }
