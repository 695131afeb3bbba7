"""Stage 2: exact bidirectional chunk scoring.

For each source chunk the best target chunk above the cosine threshold is
picked from the full similarity matrix, then the pair must also pass the
Jaccard gate. The cosine gate decides candidacy and the lexical gate decides
acceptance, which together single out near-verbatim reuse.

Target chunks may be the best match of several source chunks. Their
characters count once on the target side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Set

import numpy as np

from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.models import ChunkMatch, ChunkRecord, SimilarityScores
from overlapfinder.similarity.lexical import jaccard_similarity
from overlapfinder.similarity.vector import cosine_matrix

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Stage2Score:
    target_document_id: str
    scores: SimilarityScores
    matches: List[ChunkMatch] = field(default_factory=list)


def _ratio(matched: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return min(matched / total, 1.0)


def score_chunks(
    source_chunks: Sequence[ChunkRecord],
    target_chunks: Sequence[ChunkRecord],
    *,
    cosine_threshold: float = 0.90,
    jaccard_threshold: float = 0.60,
    target_document_id: str = "",
) -> Stage2Score:
    total_source = sum(chunk.character_count for chunk in source_chunks)
    total_target = sum(chunk.character_count for chunk in target_chunks)

    matches: List[ChunkMatch] = []
    if source_chunks and target_chunks:
        similarity = cosine_matrix(
            np.vstack([chunk.embedding for chunk in source_chunks]),
            np.vstack([chunk.embedding for chunk in target_chunks]),
        )
        eligible = similarity >= cosine_threshold
        masked = np.where(eligible, similarity, -np.inf)
        best_targets = np.argmax(masked, axis=1)

        for row, source in enumerate(source_chunks):
            column = int(best_targets[row])
            if not eligible[row, column]:
                continue
            target = target_chunks[column]
            jaccard = jaccard_similarity(source.text, target.text)
            if jaccard_threshold > 0 and jaccard < jaccard_threshold:
                continue
            matches.append(
                ChunkMatch(
                    source_chunk_id=source.id,
                    source_index=source.index,
                    target_chunk_id=target.id,
                    target_index=target.index,
                    similarity=float(similarity[row, column]),
                    jaccard=jaccard,
                    source_characters=source.character_count,
                    target_characters=target.character_count,
                )
            )

    matched_source = sum(match.source_characters for match in matches)
    counted_targets: Set[str] = set()
    matched_target = 0
    for match in matches:
        if match.target_chunk_id in counted_targets:
            continue
        counted_targets.add(match.target_chunk_id)
        matched_target += match.target_characters

    jaccards = [match.jaccard for match in matches]
    scores = SimilarityScores(
        source_score=_ratio(matched_source, total_source),
        target_score=_ratio(matched_target, total_target),
        matched_source_characters=matched_source,
        matched_target_characters=matched_target,
        total_source_characters=total_source,
        total_target_characters=total_target,
        average_jaccard=sum(jaccards) / len(jaccards) if jaccards else None,
        min_jaccard=min(jaccards) if jaccards else None,
        max_jaccard=max(jaccards) if jaccards else None,
    )
    return Stage2Score(target_document_id=target_document_id, scores=scores, matches=matches)


class BidirectionalScorer:
    """Fetches a target document's chunks and scores them against the source."""

    def __init__(self, store: SQLiteDocumentStore) -> None:
        self.store = store

    def score(
        self,
        source_chunks: Sequence[ChunkRecord],
        target_doc_id: str,
        *,
        cosine_threshold: float = 0.90,
        jaccard_threshold: float = 0.60,
    ) -> Stage2Score:
        target_chunks = self.store.get_chunks(target_doc_id)
        result = score_chunks(
            source_chunks,
            target_chunks,
            cosine_threshold=cosine_threshold,
            jaccard_threshold=jaccard_threshold,
            target_document_id=target_doc_id,
        )
        LOGGER.debug(
            "Stage 2: %s -> %s matches (source %.3f, target %.3f)",
            target_doc_id,
            len(result.matches),
            result.scores.source_score,
            result.scores.target_score,
        )
        return result
