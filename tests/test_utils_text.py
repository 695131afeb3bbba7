"""Tests for text utility functions."""

from __future__ import annotations

from overlapfinder.utils.text import chunk_text, count_characters, normalize_whitespace


class TestChunkText:
    """Test chunk_text function."""

    def test_chunk_short_text(self) -> None:
        """Should return single chunk for short text."""
        chunks = list(chunk_text("Short text", max_chars=100))

        assert chunks == ["Short text"]

    def test_chunk_long_text(self) -> None:
        """Should split long text into chunks no longer than max_chars."""
        chunks = list(chunk_text("a" * 500, max_chars=100))

        assert len(chunks) == 5
        assert all(len(chunk) <= 100 for chunk in chunks)

    def test_no_overlap_by_default(self) -> None:
        text = "0123456789" * 20
        chunks = list(chunk_text(text, max_chars=100))

        assert "".join(chunks) == text

    def test_chunk_overlap(self) -> None:
        """Should create overlapping chunks when asked to."""
        text = "0123456789" * 20  # 200 chars
        chunks = list(chunk_text(text, max_chars=100, overlap=20))

        assert len(chunks) == 3
        assert chunks[0][-20:] == chunks[1][:20]

    def test_prefers_paragraph_boundary(self) -> None:
        text = "a" * 60 + "\n\n" + "b" * 60
        chunks = list(chunk_text(text, max_chars=100))

        assert chunks == ["a" * 60, "b" * 60]

    def test_ignores_boundary_in_first_half(self) -> None:
        text = "a" * 10 + "\n\n" + "b" * 200
        chunks = list(chunk_text(text, max_chars=100))

        assert len(chunks[0]) > 10

    def test_chunk_empty_text(self) -> None:
        assert list(chunk_text("", max_chars=100)) == []
        assert list(chunk_text("   \n\n   ", max_chars=100)) == []

    def test_always_makes_progress(self) -> None:
        """Overlap larger than the window must not loop forever."""
        chunks = list(chunk_text("x" * 50, max_chars=10, overlap=20))
        assert len(chunks) <= 50


class TestCountCharacters:
    def test_ignores_surrounding_whitespace(self) -> None:
        assert count_characters("  hello world \n") == 11
        assert count_characters("") == 0


class TestNormalizeWhitespace:
    def test_strips_and_drops_blank_lines(self) -> None:
        assert normalize_whitespace(["  a ", "", "   ", " b"]) == "a\nb"

    def test_empty(self) -> None:
        assert normalize_whitespace([]) == ""
