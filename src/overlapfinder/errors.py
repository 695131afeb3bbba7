"""Exception hierarchy shared by the similarity pipeline and its surfaces."""

from __future__ import annotations


class OverlapFinderError(Exception):
    """Base class for every error raised by OverlapFinder."""


class DocumentNotFoundError(OverlapFinderError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class DocumentNotReadyError(OverlapFinderError):
    """The document lacks data the pipeline needs (centroid, chunk count).

    This means ingestion never completed for the document. It is not a
    transient fault and is never retried.
    """

    def __init__(self, document_id: str, reason: str) -> None:
        super().__init__(
            f"Document {document_id} is not ready for similarity search: {reason}. "
            "Reindex the document or run the backfill command."
        )
        self.document_id = document_id
        self.reason = reason


class InvalidEmbeddingError(OverlapFinderError):
    """A stored or supplied embedding is empty or has the wrong shape."""


class InvalidFilterError(OverlapFinderError):
    """A caller supplied a metadata filter that cannot be interpreted."""


class InvalidConfigError(OverlapFinderError):
    """A similarity search configuration value is out of range."""


class SimilaritySearchError(OverlapFinderError):
    """A pipeline stage failed; the whole search is aborted."""

    def __init__(self, message: str, *, stage: str, source_document_id: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.source_document_id = source_document_id


class SearchTimeoutError(SimilaritySearchError):
    """The search exceeded its deadline before every stage finished."""
