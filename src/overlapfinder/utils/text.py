"""Text helpers: character chunking and whitespace cleanup."""

from __future__ import annotations

from typing import Iterable, Iterator


def chunk_text(text: str, *, max_chars: int = 1200, overlap: int = 0) -> Iterator[str]:
    """Split text into character chunks, preferring paragraph boundaries.

    A chunk ends at the last blank line (or newline) inside the window when
    that break lies in the second half of the window, otherwise at exactly
    ``max_chars``. Empty chunks are never yielded.
    """
    if not text:
        return

    length = len(text)
    start = 0
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            window = text[start:end]
            cut = window.rfind("\n\n")
            if cut < max_chars // 2:
                cut = window.rfind("\n")
            if cut >= max_chars // 2:
                end = start + cut
        chunk = text[start:end].strip()
        if chunk:
            yield chunk
        if end >= length:
            break
        start = max(end - overlap, start + 1)


def count_characters(text: str) -> int:
    """Character count used for coverage scoring."""
    return len(text.strip())


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())
