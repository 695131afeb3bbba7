"""Stage 0: document-level candidate retrieval from pre-computed centroids.

Casts a wide, high-recall net: the source centroid is searched against every
chunk vector in the index and the hits are collapsed to one score per
document.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np

from overlapfinder.errors import DocumentNotFoundError, DocumentNotReadyError
from overlapfinder.index.filters import (
    DOCUMENT_ID_FIELD,
    FilterNode,
    describe,
    exclude_document,
    filter_from_mapping,
    has_field,
    without_field,
)
from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.index.vectors import VectorIndex
from overlapfinder.similarity.vector import as_vector

LOGGER = logging.getLogger(__name__)

USER_SCOPE_FIELD = "user_id"
OVERFETCH_FACTOR = 2


@dataclass(slots=True)
class Stage0Result:
    candidate_ids: List[str] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)
    elapsed_ms: float = 0.0


def collapse_by_document(hits: Sequence[Any]) -> Dict[str, float]:
    """Best score per ``payload["document_id"]``; hits without one are skipped."""
    best: Dict[str, float] = {}
    for hit in hits:
        document_id = hit.payload.get(DOCUMENT_ID_FIELD)
        if not document_id:
            continue
        score = float(hit.score or 0.0)
        if document_id not in best or best[document_id] < score:
            best[document_id] = score
    return best


class CandidateRetriever:
    """Centroid-based candidate retrieval."""

    def __init__(self, store: SQLiteDocumentStore, index: VectorIndex) -> None:
        self.store = store
        self.index = index

    def build_filter(self, source_doc_id: str, filters: Mapping[str, Any] | None) -> FilterNode:
        return exclude_document(filter_from_mapping(filters), source_doc_id)

    def _query_vector(
        self, source_doc_id: str, override_vector: Sequence[float] | np.ndarray | None
    ) -> np.ndarray:
        document = self.store.get_document(source_doc_id)
        if document is None:
            raise DocumentNotFoundError(source_doc_id)
        if override_vector is None and (document.centroid is None or document.centroid.size == 0):
            raise DocumentNotReadyError(source_doc_id, "missing centroid embedding")
        if not document.effective_chunk_count:
            raise DocumentNotReadyError(source_doc_id, "missing effective chunk count")
        if override_vector is not None:
            return as_vector(override_vector)
        return as_vector(document.centroid)

    def retrieve(
        self,
        source_doc_id: str,
        *,
        top_k: int = 600,
        filters: Mapping[str, Any] | None = None,
        override_vector: Sequence[float] | np.ndarray | None = None,
    ) -> Stage0Result:
        start = time.perf_counter()
        vector = self._query_vector(source_doc_id, override_vector)
        query_filter = self.build_filter(source_doc_id, filters)

        LOGGER.info("Stage 0: querying index with centroid for %s (top_k=%s)", source_doc_id, top_k)
        LOGGER.debug(
            "Stage 0: query params dim=%s limit=%s filter=%s",
            vector.shape[0],
            top_k * OVERFETCH_FACTOR,
            describe(query_filter),
        )

        try:
            hits = self.index.search(
                vector, limit=top_k * OVERFETCH_FACTOR, query_filter=query_filter
            )
        except Exception as exc:
            LOGGER.error(
                "Stage 0 failed for %s after %.0fms: %s (filter=%s)",
                source_doc_id,
                (time.perf_counter() - start) * 1000,
                exc,
                describe(query_filter),
            )
            raise

        best = collapse_by_document(hits)
        best.pop(source_doc_id, None)
        # vectors of deleted documents linger until the cleanup worker removes them
        live_ids = self.store.existing_ids(list(best))
        orphaned = len(best) - len(live_ids)
        if orphaned:
            LOGGER.debug("Stage 0: skipped %s documents no longer in the store", orphaned)
            best = {document_id: score for document_id, score in best.items() if document_id in live_ids}
        ranked = sorted(best.items(), key=lambda item: (-item[1], item[0]))[:top_k]
        candidate_ids = [document_id for document_id, _ in ranked]
        scores = [score for _, score in ranked]

        if not candidate_ids and has_field(query_filter, USER_SCOPE_FIELD):
            self._diagnose_empty_scope(source_doc_id, vector, query_filter, top_k)

        elapsed_ms = (time.perf_counter() - start) * 1000
        LOGGER.info(
            "Stage 0: %s candidates for %s in %.0fms (avg score %s)",
            len(candidate_ids),
            source_doc_id,
            elapsed_ms,
            f"{sum(scores) / len(scores):.3f}" if scores else "n/a",
        )
        return Stage0Result(candidate_ids=candidate_ids, scores=scores, elapsed_ms=elapsed_ms)

    def _diagnose_empty_scope(
        self, source_doc_id: str, vector: np.ndarray, query_filter: FilterNode, top_k: int
    ) -> None:
        """Tell apart "no matches" from "the user scope filters everything out".

        The fallback results are only logged. Its failures never reach the caller.
        """
        fallback_filter = without_field(query_filter, USER_SCOPE_FIELD)
        try:
            fallback_hits = self.index.search(
                vector, limit=top_k * OVERFETCH_FACTOR, query_filter=fallback_filter
            )
        except Exception as exc:
            LOGGER.warning(
                "Stage 0: fallback query without user filter failed for %s: %s",
                source_doc_id,
                exc,
            )
            return
        if fallback_hits:
            LOGGER.warning(
                "Stage 0: user_id filter eliminated all candidates for %s "
                "(%s matches without it)",
                source_doc_id,
                len(fallback_hits),
            )
