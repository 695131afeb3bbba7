"""Application configuration defaults."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal

from overlapfinder.embedding.encoder import DEFAULT_MODEL
from overlapfinder.errors import InvalidConfigError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "OVERLAPFINDER_"
MAX_STAGE2_WORKERS = 8


def _get_default_db_path() -> Path:
    """Get the default database path for the current working context."""
    # Prefer a local data/ directory when running from a checkout
    local_db = Path("data/overlapfinder.db")
    if local_db.exists():
        return local_db
    return Path.home() / ".overlapfinder" / "overlapfinder.db"


def _env(name: str) -> str | None:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def parse_env_int(name: str, fallback: int) -> int:
    """Read a non-negative integer from the environment, else ``fallback``."""
    value = _env(name)
    if value is None:
        return fallback
    try:
        parsed = int(value)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, value)
        return fallback
    return parsed if parsed >= 0 else fallback


def parse_env_float(name: str, fallback: float) -> float:
    value = _env(name)
    if value is None:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, value)
        return fallback
    return parsed if parsed >= 0 else fallback


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    model_name: str = DEFAULT_MODEL
    chunk_chars: int = 1200
    overlap: int = 0
    min_chunk_chars: int = 40
    index_backend: Literal["sqlite", "qdrant"] = "sqlite"
    qdrant_url: str = "http://localhost:6333"
    collection_name: str = "documents"

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build a config from ``OVERLAPFINDER_*`` environment variables."""
        config = cls()
        db = _env("DB")
        if db is not None:
            config.db_path = Path(db)
        config.model_name = _env("MODEL") or config.model_name
        config.chunk_chars = parse_env_int("CHUNK_CHARS", config.chunk_chars)
        config.min_chunk_chars = parse_env_int("MIN_CHUNK_CHARS", config.min_chunk_chars)
        backend = _env("INDEX_BACKEND")
        if backend in ("sqlite", "qdrant"):
            config.index_backend = backend  # type: ignore[assignment]
        config.qdrant_url = _env("QDRANT_URL") or config.qdrant_url
        config.collection_name = _env("COLLECTION") or config.collection_name
        return config

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path


@dataclass(slots=True)
class SimilarityConfig:
    """Knobs of one similarity search run."""

    stage0_top_k: int = 600
    stage1_top_k: int = 250
    stage1_enabled: bool = True
    stage1_neighbors_per_chunk: int = 30
    stage1_min_match_count: int = 1
    stage2_parallel_workers: int = 1
    min_score: float = 0.0
    source_min_score: float = 0.0
    target_min_score: float = 0.0
    cosine_threshold: float = 0.90
    jaccard_threshold: float = 0.60
    filters: Dict[str, Any] = field(default_factory=dict)
    override_vector: List[float] | None = None
    timeout_seconds: float | None = 120.0
    max_results: int | None = None

    def validate(self) -> None:
        for name in ("stage0_top_k", "stage1_top_k", "stage1_neighbors_per_chunk"):
            if getattr(self, name) <= 0:
                raise InvalidConfigError(f"{name} must be positive")
        for name in (
            "min_score",
            "source_min_score",
            "target_min_score",
            "cosine_threshold",
            "jaccard_threshold",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidConfigError(f"{name} must be within [0, 1], got {value}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InvalidConfigError("timeout_seconds must be positive")
        if self.max_results is not None and self.max_results <= 0:
            raise InvalidConfigError("max_results must be positive")

    @property
    def workers(self) -> int:
        return max(1, min(int(self.stage2_parallel_workers), MAX_STAGE2_WORKERS))


@dataclass(slots=True)
class CleanupConfig:
    max_retries: int = 3
    base_backoff: float = 2.0
    max_backoff: float = 60.0
    failure_history_limit: int = 10

    @classmethod
    def from_env(cls) -> "CleanupConfig":
        defaults = cls()
        return cls(
            max_retries=parse_env_int("DELETE_MAX_RETRIES", defaults.max_retries),
            base_backoff=parse_env_float("DELETE_BACKOFF_SECONDS", defaults.base_backoff),
        )
