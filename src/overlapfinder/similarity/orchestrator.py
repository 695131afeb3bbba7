"""Three-stage similarity search: Stage 0 -> Stage 1 -> parallel Stage 2.

A search is all-or-nothing. Any stage failure or an exceeded deadline aborts
the whole run and surfaces as a single exception; no partial result list is
ever returned.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple, TypeVar

from overlapfinder.config import SimilarityConfig
from overlapfinder.errors import (
    DocumentNotFoundError,
    OverlapFinderError,
    SearchTimeoutError,
    SimilaritySearchError,
)
from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.index.vectors import VectorIndex
from overlapfinder.models import ChunkMatch, ChunkRecord, Document, SimilarityScores
from overlapfinder.similarity.stage0 import CandidateRetriever
from overlapfinder.similarity.stage1 import ChunkPrefilter
from overlapfinder.similarity.stage2 import BidirectionalScorer, Stage2Score

LOGGER = logging.getLogger(__name__)

SCORE_PRECISION = 6

T = TypeVar("T")


@dataclass(slots=True)
class StageTiming:
    stage0_ms: float = 0.0
    stage1_ms: float = 0.0
    stage2_ms: float = 0.0
    total_ms: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "stage0_ms": round(self.stage0_ms, 1),
            "stage1_ms": round(self.stage1_ms, 1),
            "stage2_ms": round(self.stage2_ms, 1),
            "total_ms": round(self.total_ms, 1),
        }


@dataclass(slots=True)
class SimilarityResult:
    document: Document
    scores: SimilarityScores
    matched_chunks: List[ChunkMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "scores": self.scores.to_dict(),
            "matched_chunks": [match.to_dict() for match in self.matched_chunks],
        }


@dataclass(slots=True)
class SimilaritySearchResult:
    source: Document
    results: List[SimilarityResult]
    timing: StageTiming
    stages: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.source.id,
            "document_title": self.source.title,
            "results": [result.to_dict() for result in self.results],
            "total_results": len(self.results),
            "timing": self.timing.to_dict(),
            "stages": dict(self.stages),
        }


@dataclass(slots=True)
class ReadinessReport:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def result_sort_key(result: SimilarityResult) -> Tuple[Any, ...]:
    """Total ordering: scores desc, then oldest, then title, then id."""
    scores = result.scores
    return (
        -round(scores.source_score, SCORE_PRECISION),
        -round(scores.target_score, SCORE_PRECISION),
        -scores.matched_target_characters,
        result.document.created_at or "",
        result.document.title,
        result.document.id,
    )


def passes_thresholds(scores: SimilarityScores, config: SimilarityConfig) -> bool:
    if scores.matched_source_characters == 0 and scores.matched_target_characters == 0:
        return False
    if max(scores.source_score, scores.target_score) < config.min_score:
        return False
    return (
        scores.source_score >= config.source_min_score
        and scores.target_score >= config.target_min_score
    )


def validate_document_for_similarity(
    store: SQLiteDocumentStore, document_id: str
) -> ReadinessReport:
    """Check that a document carries everything the pipeline needs."""
    document = store.get_document(document_id)
    if document is None:
        return ReadinessReport(valid=False, errors=[f"Document not found: {document_id}"])

    report = ReadinessReport(valid=True)
    if document.centroid is None or document.centroid.size == 0:
        report.errors.append("Missing centroid embedding")
    if not document.effective_chunk_count:
        report.errors.append("Missing effective chunk count")
    else:
        stored = store.chunk_count(document_id)
        if stored != document.effective_chunk_count:
            report.warnings.append(
                f"Stored chunk count ({stored}) differs from effective chunk count "
                f"({document.effective_chunk_count})"
            )
    if not document.total_characters:
        report.warnings.append("Missing total character count")
    report.valid = not report.errors
    return report


class SimilarityOrchestrator:
    """Runs the similarity funnel for one source document per call.

    Instances hold no per-request state, so concurrent searches for different
    documents never wait on each other.
    """

    def __init__(self, store: SQLiteDocumentStore, index: VectorIndex) -> None:
        self.store = store
        self.index = index
        self.retriever = CandidateRetriever(store, index)
        self.prefilter = ChunkPrefilter(index)
        self.scorer = BidirectionalScorer(store)

    def _run_stage(self, stage: str, source_doc_id: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except OverlapFinderError:
            raise
        except Exception as exc:
            LOGGER.error("Similarity search for %s failed in %s: %s", source_doc_id, stage, exc)
            raise SimilaritySearchError(
                f"{stage} failed: {exc}", stage=stage, source_document_id=source_doc_id
            ) from exc

    @staticmethod
    def _check_deadline(deadline: float | None, stage: str, source_doc_id: str) -> None:
        if deadline is not None and time.perf_counter() > deadline:
            raise SearchTimeoutError(
                f"Similarity search timed out during {stage}",
                stage=stage,
                source_document_id=source_doc_id,
            )

    def execute(
        self, source_doc_id: str, config: SimilarityConfig | None = None
    ) -> SimilaritySearchResult:
        config = config or SimilarityConfig()
        config.validate()
        start = time.perf_counter()
        deadline = start + config.timeout_seconds if config.timeout_seconds else None
        timing = StageTiming()

        source = self.store.get_document(source_doc_id)
        if source is None:
            raise DocumentNotFoundError(source_doc_id)
        source_chunks = self._run_stage(
            "load", source_doc_id, lambda: self.store.get_chunks(source_doc_id)
        )

        stage0 = self._run_stage(
            "stage0",
            source_doc_id,
            lambda: self.retriever.retrieve(
                source_doc_id,
                top_k=config.stage0_top_k,
                filters=config.filters,
                override_vector=config.override_vector,
            ),
        )
        timing.stage0_ms = stage0.elapsed_ms
        self._check_deadline(deadline, "stage0", source_doc_id)

        if config.stage1_enabled:
            stage1 = self._run_stage(
                "stage1",
                source_doc_id,
                lambda: self.prefilter.narrow(
                    source_chunks,
                    stage0.candidate_ids,
                    top_k=config.stage1_top_k,
                    neighbors_per_chunk=config.stage1_neighbors_per_chunk,
                    min_match_count=config.stage1_min_match_count,
                ),
            )
            candidate_ids = stage1.candidate_ids
            timing.stage1_ms = stage1.elapsed_ms
        else:
            candidate_ids = stage0.candidate_ids[: config.stage1_top_k]
        self._check_deadline(deadline, "stage1", source_doc_id)

        stage2_start = time.perf_counter()
        scored = self._score_candidates(source_doc_id, source_chunks, candidate_ids, config, deadline)
        timing.stage2_ms = (time.perf_counter() - stage2_start) * 1000

        results = self._assemble(scored, config)
        timing.total_ms = (time.perf_counter() - start) * 1000
        stages = {
            "stage0_candidates": len(stage0.candidate_ids),
            "stage1_candidates": len(candidate_ids),
            "final_results": len(results),
        }
        LOGGER.info(
            "Similarity search for %s: %s -> %s -> %s results in %.0fms",
            source_doc_id,
            stages["stage0_candidates"],
            stages["stage1_candidates"],
            stages["final_results"],
            timing.total_ms,
        )
        return SimilaritySearchResult(source=source, results=results, timing=timing, stages=stages)

    def _score_candidates(
        self,
        source_doc_id: str,
        source_chunks: Sequence[ChunkRecord],
        candidate_ids: Sequence[str],
        config: SimilarityConfig,
        deadline: float | None,
    ) -> List[Stage2Score]:
        if not candidate_ids:
            return []

        executor = ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="stage2")
        try:
            futures: Dict[str, Future[Stage2Score]] = {
                candidate_id: executor.submit(
                    self.scorer.score,
                    source_chunks,
                    candidate_id,
                    cosine_threshold=config.cosine_threshold,
                    jaccard_threshold=config.jaccard_threshold,
                )
                for candidate_id in candidate_ids
            }
            timeout = None if deadline is None else max(deadline - time.perf_counter(), 0.0)
            done, not_done = wait(futures.values(), timeout=timeout, return_when=FIRST_EXCEPTION)

            for candidate_id in candidate_ids:
                future = futures[candidate_id]
                if future in done and future.exception() is not None:
                    exc = future.exception()
                    if isinstance(exc, OverlapFinderError):
                        raise exc
                    LOGGER.error(
                        "Stage 2 failed for %s against %s: %s", source_doc_id, candidate_id, exc
                    )
                    raise SimilaritySearchError(
                        f"stage2 failed for candidate {candidate_id}: {exc}",
                        stage="stage2",
                        source_document_id=source_doc_id,
                    ) from exc

            if not_done:
                LOGGER.warning(
                    "Stage 2 for %s timed out with %s of %s candidates unscored",
                    source_doc_id,
                    len(not_done),
                    len(candidate_ids),
                )
                raise SearchTimeoutError(
                    "Similarity search timed out during stage2",
                    stage="stage2",
                    source_document_id=source_doc_id,
                )
            return [futures[candidate_id].result() for candidate_id in candidate_ids]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _assemble(
        self, scored: Sequence[Stage2Score], config: SimilarityConfig
    ) -> List[SimilarityResult]:
        kept = [item for item in scored if passes_thresholds(item.scores, config)]
        documents = self.store.get_documents([item.target_document_id for item in kept])
        results: List[SimilarityResult] = []
        for item in kept:
            document = documents.get(item.target_document_id)
            if document is None:
                LOGGER.debug("Dropping %s: document no longer exists", item.target_document_id)
                continue
            results.append(
                SimilarityResult(document=document, scores=item.scores, matched_chunks=item.matches)
            )
        results.sort(key=result_sort_key)
        if config.max_results is not None:
            results = results[: config.max_results]
        return results
