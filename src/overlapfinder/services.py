"""Wiring of stores, index and pipeline objects from an :class:`AppConfig`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from overlapfinder.config import AppConfig
from overlapfinder.index.qdrant import QdrantVectorIndex
from overlapfinder.index.storage import SQLiteDocumentStore
from overlapfinder.index.vectors import SQLiteVectorIndex, VectorIndex
from overlapfinder.similarity.orchestrator import SimilarityOrchestrator

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    store: SQLiteDocumentStore
    index: VectorIndex
    orchestrator: SimilarityOrchestrator

    def close(self) -> None:
        self.store.close()
        close = getattr(self.index, "close", None)
        if close is not None:
            close()


def open_vector_index(config: AppConfig, db_path: Path) -> VectorIndex:
    if config.index_backend == "qdrant":
        LOGGER.info("Using Qdrant index at %s (%s)", config.qdrant_url, config.collection_name)
        return QdrantVectorIndex(url=config.qdrant_url, collection=config.collection_name)
    return SQLiteVectorIndex(db_path, collection=config.collection_name)


def open_services(config: AppConfig, db_path: Path) -> Services:
    store = SQLiteDocumentStore(db_path)
    index = open_vector_index(config, db_path)
    return Services(store=store, index=index, orchestrator=SimilarityOrchestrator(store, index))
