"""FastAPI application exposing similarity search and document deletion."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from overlapfinder.cleanup.worker import CleanupWorker
from overlapfinder.config import AppConfig, CleanupConfig, SimilarityConfig
from overlapfinder.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    InvalidConfigError,
    InvalidEmbeddingError,
    InvalidFilterError,
    SearchTimeoutError,
    SimilaritySearchError,
)
from overlapfinder.services import Services, open_services, open_vector_index
from overlapfinder.similarity.orchestrator import validate_document_for_similarity

LOGGER = logging.getLogger(__name__)

MAX_RESULT_LIMIT = 100

app = FastAPI(title="OverlapFinder API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class SimilarityPayload(BaseModel):
    stage0_top_k: int = Field(600, gt=0)
    stage1_top_k: int = Field(250, gt=0)
    stage1_enabled: bool = True
    stage1_neighbors_per_chunk: int = Field(30, gt=0)
    stage2_parallel_workers: int = Field(1, ge=1)
    min_score: float = Field(0.0, ge=0.0, le=1.0)
    source_min_score: float = Field(0.0, ge=0.0, le=1.0)
    target_min_score: float = Field(0.0, ge=0.0, le=1.0)
    cosine_threshold: float = Field(0.90, ge=0.0, le=1.0)
    jaccard_threshold: float = Field(0.60, ge=0.0, le=1.0)
    filters: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float = Field(120.0, gt=0)
    top_k: int | None = Field(None, gt=0)
    db: Path | None = None

    def to_config(self) -> SimilarityConfig:
        return SimilarityConfig(
            stage0_top_k=self.stage0_top_k,
            stage1_top_k=self.stage1_top_k,
            stage1_enabled=self.stage1_enabled,
            stage1_neighbors_per_chunk=self.stage1_neighbors_per_chunk,
            stage2_parallel_workers=self.stage2_parallel_workers,
            min_score=self.min_score,
            source_min_score=self.source_min_score,
            target_min_score=self.target_min_score,
            cosine_threshold=self.cosine_threshold,
            jaccard_threshold=self.jaccard_threshold,
            filters=dict(self.filters),
            timeout_seconds=self.timeout_seconds,
            max_results=min(self.top_k, MAX_RESULT_LIMIT) if self.top_k else None,
        )


def _resolve_db_path(db: Path | None) -> Path:
    config = AppConfig.from_env()
    if db is not None:
        config.db_path = db
    return config.resolve_db_path(Path.cwd())


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _open(db: Path | None) -> Services:
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(status_code=404, detail=f"Database not found at {resolved_db}")
    return open_services(AppConfig.from_env(), resolved_db)


def _cleanup_workers() -> Dict[Path, CleanupWorker]:
    workers = getattr(app.state, "cleanup_workers", None)
    if workers is None:
        workers = {}
        app.state.cleanup_workers = workers
    return workers


def _get_cleanup_worker(resolved_db: Path) -> CleanupWorker:
    """Return the running cleanup worker bound to the index of ``resolved_db``."""
    workers = _cleanup_workers()
    worker = workers.get(resolved_db)
    if worker is None:
        _ensure_db_parent(resolved_db)
        index = open_vector_index(AppConfig.from_env(), resolved_db)
        worker = CleanupWorker(index, config=CleanupConfig.from_env())
        worker.start()
        workers[resolved_db] = worker
    return worker


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    _get_cleanup_worker(_resolve_db_path(None))


@app.on_event("shutdown")
async def shutdown_event() -> None:
    workers = _cleanup_workers()
    for worker in workers.values():
        worker.stop()
        close = getattr(worker.index, "close", None)
        if close is not None:
            close()
    workers.clear()


@app.post("/documents/{document_id}/similar")
async def similar_documents(document_id: str, payload: SimilarityPayload) -> Dict[str, Any]:
    config = payload.to_config()
    services = _open(payload.db)
    try:
        outcome = await asyncio.to_thread(services.orchestrator.execute, document_id, config)
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (DocumentNotReadyError, InvalidConfigError, InvalidFilterError, InvalidEmbeddingError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SearchTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except SimilaritySearchError as exc:
        LOGGER.error("Similarity search for %s failed in %s: %s", document_id, exc.stage, exc)
        raise HTTPException(status_code=500, detail=f"Similarity search failed: {exc}") from exc
    finally:
        services.close()

    response = outcome.to_dict()
    response["config"] = payload.model_dump(exclude={"db"})
    return response


@app.get("/documents/{document_id}/similar")
async def similarity_readiness(document_id: str, db: Path | None = None) -> Dict[str, Any]:
    """Report whether a document can be used as a similarity search source."""
    services = _open(db)
    try:
        document = services.store.get_document(document_id)
        if document is None:
            raise HTTPException(status_code=404, detail="Document not found")
        report = validate_document_for_similarity(services.store, document_id)
    finally:
        services.close()
    return {
        "document_id": document_id,
        "document_title": document.title,
        "ready": report.valid,
        "errors": report.errors,
        "warnings": report.warnings,
    }


@app.get("/documents")
async def list_documents(db: Path | None = None) -> Dict[str, Any]:
    """List all indexed documents in the database."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        return {"documents": [], "stats": {"document_count": 0, "chunk_count": 0, "total_characters": 0}}

    services = _open(db)
    try:
        documents: List[Dict[str, Any]] = services.store.list_documents()
        stats = services.store.get_stats()
    finally:
        services.close()
    return {"documents": documents, "stats": stats}


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str, db: Path | None = None) -> Dict[str, Any]:
    """Delete a document now and queue removal of its vectors."""
    resolved_db = _resolve_db_path(db)
    services = _open(db)
    try:
        vector_ids = services.store.delete_document(document_id)
    finally:
        services.close()

    if vector_ids is None:
        raise HTTPException(status_code=404, detail=f"Document with ID {document_id} not found")

    _get_cleanup_worker(resolved_db).enqueue(document_id, vector_ids)
    return {"status": "ok", "deleted_id": document_id, "vectors_queued": len(vector_ids)}


@app.get("/health/cleanup")
async def cleanup_status(db: Path | None = None) -> Dict[str, Any]:
    return _get_cleanup_worker(_resolve_db_path(db)).metrics().to_dict()
