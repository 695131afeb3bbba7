"""Stage 1: candidate-aware chunk-level prefilter.

Every source chunk is searched against the index, restricted to the Stage 0
candidates. A candidate scores one point per distinct source chunk that has
it among its nearest neighbours; the best candidates move on to the exact
all-pairs scoring of Stage 2.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple

from overlapfinder.index.filters import DOCUMENT_ID_FIELD, In
from overlapfinder.index.vectors import VectorIndex
from overlapfinder.models import ChunkRecord

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Stage1Result:
    candidate_ids: List[str] = field(default_factory=list)
    match_counts: List[int] = field(default_factory=list)
    elapsed_ms: float = 0.0


def estimate_match_coverage(matched_chunk_count: int, total_source_chunks: int) -> Tuple[float, str]:
    """Share of source chunks matched (percent) and a coarse quality label."""
    if total_source_chunks <= 0:
        return 0.0, "low"
    coverage = matched_chunk_count / total_source_chunks * 100
    if coverage > 30:
        return coverage, "high"
    if coverage > 10:
        return coverage, "medium"
    return coverage, "low"


class ChunkPrefilter:
    def __init__(self, index: VectorIndex) -> None:
        self.index = index

    def narrow(
        self,
        source_chunks: Sequence[ChunkRecord],
        candidate_ids: Sequence[str],
        *,
        top_k: int = 250,
        neighbors_per_chunk: int = 30,
        batch_size: int = 150,
        min_match_count: int = 1,
    ) -> Stage1Result:
        start = time.perf_counter()
        if not candidate_ids or not source_chunks:
            return Stage1Result(elapsed_ms=(time.perf_counter() - start) * 1000)

        LOGGER.info(
            "Stage 1: prefiltering %s candidates with %s source chunks (top_k=%s, neighbors=%s)",
            len(candidate_ids),
            len(source_chunks),
            top_k,
            neighbors_per_chunk,
        )

        stage0_rank = {document_id: rank for rank, document_id in enumerate(candidate_ids)}
        candidate_filter = In(DOCUMENT_ID_FIELD, tuple(candidate_ids))
        matched_chunks: Dict[str, Set[int]] = {}
        best_scores: Dict[str, float] = {}

        try:
            for batch_start in range(0, len(source_chunks), batch_size):
                batch = source_chunks[batch_start : batch_start + batch_size]
                LOGGER.debug(
                    "Stage 1: batch %s-%s", batch_start, batch_start + len(batch) - 1
                )
                for chunk in batch:
                    neighbors = self.index.search(
                        chunk.embedding, limit=neighbors_per_chunk, query_filter=candidate_filter
                    )
                    seen: Set[str] = set()
                    for neighbor in neighbors:
                        document_id = neighbor.payload.get(DOCUMENT_ID_FIELD)
                        # each source chunk counts at most once per candidate
                        if document_id not in stage0_rank or document_id in seen:
                            continue
                        seen.add(document_id)
                        matched_chunks.setdefault(document_id, set()).add(chunk.index)
                        best_scores[document_id] = max(
                            best_scores.get(document_id, float("-inf")), float(neighbor.score)
                        )
        except Exception as exc:
            LOGGER.error(
                "Stage 1 failed after %.0fms: %s", (time.perf_counter() - start) * 1000, exc
            )
            raise

        ranked = sorted(
            (
                (document_id, len(chunk_indexes))
                for document_id, chunk_indexes in matched_chunks.items()
                if len(chunk_indexes) >= min_match_count
            ),
            key=lambda item: (-item[1], -best_scores[item[0]], stage0_rank[item[0]]),
        )[:top_k]

        elapsed_ms = (time.perf_counter() - start) * 1000
        counts = [count for _, count in ranked]
        LOGGER.info(
            "Stage 1: kept %s candidates in %.0fms (avg matched chunks %s)",
            len(ranked),
            elapsed_ms,
            f"{sum(counts) / len(counts):.1f}" if counts else "n/a",
        )
        if ranked:
            coverage, quality = estimate_match_coverage(counts[0], len(source_chunks))
            LOGGER.debug(
                "Stage 1: top candidate %s matched %.1f%% of source chunks (%s)",
                ranked[0][0],
                coverage,
                quality,
            )
        return Stage1Result(
            candidate_ids=[document_id for document_id, _ in ranked],
            match_counts=counts,
            elapsed_ms=elapsed_ms,
        )
