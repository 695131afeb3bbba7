"""Command line interface for OverlapFinder."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from overlapfinder.cleanup.worker import CleanupWorker
from overlapfinder.config import AppConfig, CleanupConfig, SimilarityConfig
from overlapfinder.embedding.encoder import EmbeddingConfig, EmbeddingModel
from overlapfinder.errors import OverlapFinderError
from overlapfinder.index.indexer import Indexer, backfill_centroid
from overlapfinder.services import open_services
from overlapfinder.utils.files import iter_document_paths

console = Console()
app = typer.Typer(help="OverlapFinder - find documents that reuse each other's text")

CLEANUP_WAIT_SECONDS = 30.0


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _resolve_db(db: Path | None, *, must_exist: bool = True) -> Path:
    config = AppConfig.from_env()
    if db is not None:
        config.db_path = db
    resolved = config.resolve_db_path(Path.cwd())
    if must_exist and not resolved.exists():
        raise typer.BadParameter(f"Database not found: {resolved}")
    return resolved


def _parse_filters(values: List[str]) -> Dict[str, Any]:
    """Turn repeated ``key=value`` options into a metadata filter mapping."""
    filters: Dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise typer.BadParameter(f"Filters must look like key=value, got {item!r}")
        if key in filters:
            existing = filters[key]
            filters[key] = (existing if isinstance(existing, list) else [existing]) + [value]
        else:
            filters[key] = value
    return filters


@app.command()
def index(
    inputs: List[Path] = typer.Argument(
        ..., help="Files or folders (PDF, txt, md) to index.", resolve_path=True
    ),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(AppConfig().model_name, help="Sentence-transformer model name"),
    chunk_chars: int = typer.Option(AppConfig().chunk_chars, help="Chunk size in characters"),
    min_chunk_chars: int = typer.Option(
        AppConfig().min_chunk_chars, help="Chunks shorter than this are not scored"
    ),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner stored in the payload"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index one or more paths containing documents."""
    _setup_logging(verbose)
    config = AppConfig.from_env()
    resolved_db = _resolve_db(db, must_exist=False)
    _ensure_db_parent(resolved_db)

    paths = list(iter_document_paths(inputs))
    if not paths:
        console.print("[yellow]No indexable files found.[/yellow]")
        return

    embedder = EmbeddingModel(EmbeddingConfig(model_name=model))
    services = open_services(config, resolved_db)
    indexer = Indexer(
        embedder,
        services.store,
        services.index,
        chunk_chars=chunk_chars,
        overlap=config.overlap,
        min_chunk_chars=min_chunk_chars,
    )
    console.print(f"Indexing into [bold]{resolved_db}[/bold]...")
    try:
        stats = indexer.index_paths(paths, user_id=user_id)
    finally:
        services.close()
    console.print(
        f"Inserted: {stats.inserted}, updated: {stats.updated}, "
        f"skipped: {stats.skipped}, failed: {stats.failed}"
    )


@app.command()
def documents(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """List indexed documents."""
    resolved_db = _resolve_db(db)
    services = open_services(AppConfig.from_env(), resolved_db)
    try:
        rows = services.store.list_documents()
    finally:
        services.close()

    if not rows:
        console.print("[yellow]No documents indexed.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Chunks")
    table.add_column("Characters")
    table.add_column("Ready")
    for row in rows:
        ready = row["has_centroid"] and bool(row["effective_chunk_count"])
        table.add_row(
            row["id"],
            row["title"],
            str(row["chunk_count"]),
            str(row["total_characters"] or 0),
            "yes" if ready else "[red]no[/red]",
        )
    console.print(table)


@app.command()
def similar(
    document_id: str = typer.Argument(..., help="Source document id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    stage0_top_k: int = typer.Option(600, help="Centroid candidates kept by stage 0"),
    stage1_top_k: int = typer.Option(250, help="Candidates kept by the chunk prefilter"),
    stage1: bool = typer.Option(True, "--stage1/--no-stage1", help="Run the chunk prefilter"),
    workers: int = typer.Option(1, help="Parallel stage 2 workers"),
    min_score: float = typer.Option(0.0, help="Minimum source or target coverage"),
    cosine_threshold: float = typer.Option(0.90, help="Minimum chunk cosine similarity"),
    jaccard_threshold: float = typer.Option(0.60, help="Minimum chunk word overlap (0 disables)"),
    filters: List[str] = typer.Option([], "--filter", help="Metadata filter key=value"),
    timeout: float = typer.Option(120.0, help="Overall deadline in seconds"),
    limit: Optional[int] = typer.Option(None, help="Maximum results to show"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Find documents that share content with DOCUMENT_ID."""
    _setup_logging(verbose)
    resolved_db = _resolve_db(db)
    config = SimilarityConfig(
        stage0_top_k=stage0_top_k,
        stage1_top_k=stage1_top_k,
        stage1_enabled=stage1,
        stage2_parallel_workers=workers,
        min_score=min_score,
        cosine_threshold=cosine_threshold,
        jaccard_threshold=jaccard_threshold,
        filters=_parse_filters(filters),
        timeout_seconds=timeout,
        max_results=limit,
    )

    services = open_services(AppConfig.from_env(), resolved_db)
    try:
        outcome = services.orchestrator.execute(document_id, config)
    except OverlapFinderError as exc:
        console.print(f"[red]Similarity search failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        services.close()

    timing = outcome.timing
    console.print(
        f"Stage 0: {outcome.stages['stage0_candidates']} candidates ({timing.stage0_ms:.0f}ms), "
        f"stage 1: {outcome.stages['stage1_candidates']} ({timing.stage1_ms:.0f}ms), "
        f"stage 2: {timing.stage2_ms:.0f}ms"
    )
    if not outcome.results:
        console.print("[yellow]No overlapping documents found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Source %")
    table.add_column("Target %")
    table.add_column("Matches")
    table.add_column("Avg Jaccard")
    table.add_column("Document")
    table.add_column("ID")
    for result in outcome.results:
        scores = result.scores
        table.add_row(
            f"{scores.source_score * 100:.1f}",
            f"{scores.target_score * 100:.1f}",
            str(len(result.matched_chunks)),
            f"{scores.average_jaccard:.2f}" if scores.average_jaccard is not None else "-",
            result.document.title,
            result.document.id,
        )
    console.print(table)


@app.command()
def delete(
    document_id: str = typer.Argument(..., help="Document id to delete"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Delete a document and remove its vectors from the index."""
    _setup_logging(verbose)
    resolved_db = _resolve_db(db)
    services = open_services(AppConfig.from_env(), resolved_db)
    worker = CleanupWorker(services.index, config=CleanupConfig.from_env())
    try:
        vector_ids = services.store.delete_document(document_id)
        if vector_ids is None:
            console.print(f"[red]Document {document_id} not found.[/red]")
            raise typer.Exit(code=1)

        worker.enqueue(document_id, vector_ids)
        worker.start()
        deadline = time.monotonic() + CLEANUP_WAIT_SECONDS
        while worker.metrics().pending_documents and time.monotonic() < deadline:
            time.sleep(0.1)
        worker.stop()
    finally:
        services.close()

    metrics = worker.metrics()
    if metrics.recent_failures or metrics.pending_documents:
        console.print(
            f"[yellow]Deleted {document_id}; vector cleanup did not complete.[/yellow]"
        )
        return
    console.print(f"Deleted {document_id} ({len(vector_ids)} vectors removed).")


@app.command()
def backfill(
    document_id: str = typer.Argument(..., help="Document id to repair"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Recompute a document's centroid and chunk statistics from its stored chunks."""
    resolved_db = _resolve_db(db)
    services = open_services(AppConfig.from_env(), resolved_db)
    try:
        document = backfill_centroid(services.store, document_id)
    except OverlapFinderError as exc:
        console.print(f"[red]Backfill failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        services.close()
    console.print(
        f"Backfilled {document.id}: {document.effective_chunk_count} chunks, "
        f"{document.total_characters} characters."
    )


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Start the HTTP API."""
    import os

    import uvicorn

    resolved_db = _resolve_db(db, must_exist=False)
    if not resolved_db.exists():
        console.print("[yellow]Warning: database not found, searches will fail.[/yellow]")
    os.environ["OVERLAPFINDER_DB"] = str(resolved_db)

    console.print(f"Starting API on http://{host}:{port} (database: {resolved_db})")
    uvicorn.run(
        "overlapfinder.web.app:app",
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
