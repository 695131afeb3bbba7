"""Background removal of a deleted document's vectors from the index.

Deleting a document must not wait on the vector index, so its vectors are
handed to a :class:`CleanupWorker`. The worker owns a FIFO of ready tasks and
a heap of tasks waiting out a retry delay, and executes one delete at a time
on its own thread. Tasks that keep failing are dropped after ``max_retries``
and kept in a short failure history. Orphaned vectors only cost storage:
Stage 0 skips hits whose document is no longer in the store.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Sequence, Tuple

from overlapfinder.config import CleanupConfig
from overlapfinder.index.vectors import VectorIndex

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupTask:
    document_id: str
    attempt: int = 0
    enqueued_at: float = 0.0
    last_error: str | None = None
    vector_ids: List[str] | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "attempt": self.attempt,
            "enqueued_at": self.enqueued_at,
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class CleanupFailure:
    document_id: str
    attempts: int
    error: str
    failed_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "attempts": self.attempts,
            "error": self.error,
            "failed_at": self.failed_at,
        }


@dataclass(slots=True)
class CleanupMetrics:
    queue_depth: int
    pending_documents: int
    is_processing: bool
    active_task: Dict[str, Any] | None
    retry_config: Dict[str, float]
    recent_failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_depth": self.queue_depth,
            "pending_documents": self.pending_documents,
            "is_processing": self.is_processing,
            "active_task": self.active_task,
            "retry_config": dict(self.retry_config),
            "recent_failures": list(self.recent_failures),
        }


class CleanupWorker:
    """Sequential, retrying vector deletion queue.

    ``clock`` drives retry scheduling and ``wall_clock`` stamps tasks and
    failures; both are injectable so the retry state machine can be stepped
    in tests with :meth:`run_pending` instead of waiting on real time.
    """

    def __init__(
        self,
        index: VectorIndex,
        *,
        config: CleanupConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.index = index
        self.config = config or CleanupConfig()
        self._clock = clock
        self._wall_clock = wall_clock
        self._condition = threading.Condition()
        self._ready: Deque[CleanupTask] = deque()
        self._delayed: List[Tuple[float, int, CleanupTask]] = []
        self._sequence = itertools.count()
        self._pending: Dict[str, CleanupTask] = {}
        self._failures: Deque[CleanupFailure] = deque(maxlen=self.config.failure_history_limit)
        self._active: CleanupTask | None = None
        self._thread: threading.Thread | None = None
        self._stopping = False

    # lifecycle

    def start(self) -> None:
        with self._condition:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stopping = False
            self._thread = threading.Thread(
                target=self._run, name="overlapfinder-cleanup", daemon=True
            )
            self._thread.start()
        LOGGER.info("Cleanup worker started")

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._condition:
            self._stopping = True
            self._condition.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
        with self._condition:
            self._thread = None
            remaining = len(self._pending)
        LOGGER.info("Cleanup worker stopped (%s documents still pending)", remaining)

    def _run(self) -> None:
        while True:
            with self._condition:
                while not self._stopping and not self._has_due_task():
                    self._condition.wait(self._seconds_until_next())
                if self._stopping:
                    return
            self.run_pending()

    # queue operations

    def enqueue(self, document_id: str, vector_ids: Sequence[str] | None = None) -> None:
        """Schedule deletion of a document's vectors; safe from any thread.

        While a task for ``document_id`` is waiting, a repeated call only
        refreshes its timestamp and replaces its vector ids when new ones are
        given. A call that arrives while the task is executing queues a new
        task, since the running delete already captured its ids.
        """
        if not document_id:
            return
        ids = list(vector_ids) if vector_ids else None
        with self._condition:
            existing = self._pending.get(document_id)
            if existing is not None and existing is not self._active:
                existing.enqueued_at = self._wall_clock()
                if ids:
                    existing.vector_ids = ids
                return
            task = CleanupTask(
                document_id=document_id, enqueued_at=self._wall_clock(), vector_ids=ids
            )
            self._pending[document_id] = task
            self._ready.append(task)
            self._condition.notify_all()
        LOGGER.debug("Queued vector cleanup for %s", document_id)

    def run_pending(self) -> int:
        """Execute every task that is due now, one after another.

        Returns the number of delete attempts made.
        """
        attempts = 0
        while True:
            with self._condition:
                self._promote_due()
                if not self._ready:
                    return attempts
                task = self._ready.popleft()
                self._active = task
            try:
                self._handle(task)
            finally:
                with self._condition:
                    self._active = None
            attempts += 1

    def _handle(self, task: CleanupTask) -> None:
        with self._condition:
            vector_ids = list(task.vector_ids or [])
        try:
            if vector_ids:
                self.index.delete_points(vector_ids)
            else:
                self.index.delete_document(task.document_id)
        except Exception as exc:
            self._record_failure(task, exc)
            return

        with self._condition:
            if self._pending.get(task.document_id) is task:
                del self._pending[task.document_id]
        LOGGER.info(
            "Vector cleanup completed for %s after %s attempt(s) (%s vector ids given)",
            task.document_id,
            task.attempt + 1,
            len(vector_ids),
        )

    def _record_failure(self, task: CleanupTask, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        with self._condition:
            task.attempt += 1
            task.last_error = message
            if task.attempt > self.config.max_retries:
                if self._pending.get(task.document_id) is task:
                    del self._pending[task.document_id]
                self._failures.append(
                    CleanupFailure(
                        document_id=task.document_id,
                        attempts=task.attempt,
                        error=message,
                        failed_at=self._wall_clock(),
                    )
                )
                LOGGER.error(
                    "Vector cleanup for %s abandoned after %s attempts: %s",
                    task.document_id,
                    task.attempt,
                    message,
                )
                return

            delay = self.backoff_delay(task.attempt)
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._sequence), task))
            self._condition.notify_all()
        LOGGER.warning(
            "Vector cleanup for %s failed (attempt %s), retrying in %.1fs: %s",
            task.document_id,
            task.attempt,
            delay,
            message,
        )

    def backoff_delay(self, attempt: int) -> float:
        return min(self.config.base_backoff * 2 ** (attempt - 1), self.config.max_backoff)

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task = heapq.heappop(self._delayed)
            self._ready.append(task)

    def _has_due_task(self) -> bool:
        return bool(self._ready) or (bool(self._delayed) and self._delayed[0][0] <= self._clock())

    def _seconds_until_next(self) -> float | None:
        if not self._delayed:
            return None
        return max(self._delayed[0][0] - self._clock(), 0.0)

    # observability

    def metrics(self) -> CleanupMetrics:
        with self._condition:
            return CleanupMetrics(
                queue_depth=len(self._ready) + len(self._delayed),
                pending_documents=len(self._pending),
                is_processing=self._active is not None,
                active_task=self._active.to_dict() if self._active else None,
                retry_config={
                    "max_retries": self.config.max_retries,
                    "base_backoff": self.config.base_backoff,
                    "max_backoff": self.config.max_backoff,
                },
                recent_failures=[failure.to_dict() for failure in self._failures],
            )
