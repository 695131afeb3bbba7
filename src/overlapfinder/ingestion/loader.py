"""Text extraction for indexable files.

PDFs go through PyMuPDF (fitz); ``.txt`` and ``.md`` files are read as UTF-8.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import fitz  # PyMuPDF

from overlapfinder.utils.text import normalize_whitespace

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ExtractedText:
    title: str
    text: str
    page_count: int | None = None


def iter_pdf_pages(path: Path) -> Iterator[str]:
    """Yield normalized text page by page; unreadable pages are skipped."""
    doc = fitz.open(path)
    try:
        for index in range(len(doc)):
            try:
                text = doc[index].get_text() or ""
            except Exception as exc:  # pragma: no cover - corrupt page
                LOGGER.warning("Failed to read page %s in %s: %s", index, path, exc)
                continue
            normalized = normalize_whitespace(text.splitlines())
            if normalized:
                yield normalized
    finally:
        doc.close()


def load_pdf(path: Path) -> ExtractedText:
    doc = fitz.open(path)
    try:
        metadata = doc.metadata or {}
        title = metadata.get("title") or path.stem
        page_count = len(doc)
    finally:
        doc.close()
    return ExtractedText(
        title=title, text="\n\n".join(iter_pdf_pages(path)), page_count=page_count
    )


def load_text_file(path: Path) -> ExtractedText:
    raw = path.read_text(encoding="utf-8", errors="replace")
    return ExtractedText(title=path.stem, text=raw.strip())


def extract_text(path: Path) -> ExtractedText:
    if path.suffix.lower() == ".pdf":
        return load_pdf(path)
    return load_text_file(path)
