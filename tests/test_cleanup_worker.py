"""Tests for the background vector cleanup worker."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from overlapfinder.cleanup.worker import CleanupWorker
from overlapfinder.config import CleanupConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _worker(index, clock, **config) -> CleanupWorker:
    return CleanupWorker(
        index, config=CleanupConfig(**config), clock=clock, wall_clock=clock
    )


class TestEnqueue:
    def test_enqueue_is_idempotent_while_pending(self, clock) -> None:
        worker = _worker(MagicMock(), clock)

        worker.enqueue("doc", ["doc_chunk_0"])
        clock.advance(5)
        worker.enqueue("doc", ["doc_chunk_0", "doc_chunk_1"])

        metrics = worker.metrics()
        assert metrics.pending_documents == 1
        assert metrics.queue_depth == 1

    def test_repeated_enqueue_updates_vector_ids(self, clock) -> None:
        index = MagicMock()
        worker = _worker(index, clock)

        worker.enqueue("doc", ["doc_chunk_0"])
        worker.enqueue("doc", ["doc_chunk_0", "doc_chunk_1"])
        worker.run_pending()

        index.delete_points.assert_called_once_with(["doc_chunk_0", "doc_chunk_1"])

    def test_enqueue_during_active_delete_queues_new_task(self, clock) -> None:
        started = threading.Event()
        release = threading.Event()
        deleted = []

        def delete_points(ids):
            deleted.append(list(ids))
            if len(deleted) == 1:
                started.set()
                assert release.wait(5)

        index = MagicMock()
        index.delete_points.side_effect = delete_points
        worker = _worker(index, clock)
        worker.enqueue("doc", ["old_0"])

        runner = threading.Thread(target=worker.run_pending)
        runner.start()
        assert started.wait(5)
        worker.enqueue("doc", ["new_0", "new_1"])
        assert worker.metrics().queue_depth == 1
        release.set()
        runner.join(5)

        worker.run_pending()

        assert deleted == [["old_0"], ["new_0", "new_1"]]
        assert worker.metrics().pending_documents == 0

    def test_empty_document_id_ignored(self, clock) -> None:
        worker = _worker(MagicMock(), clock)
        worker.enqueue("")
        assert worker.metrics().pending_documents == 0


class TestRunPending:
    def test_deletes_by_ids(self, clock) -> None:
        index = MagicMock()
        worker = _worker(index, clock)

        worker.enqueue("doc", ["doc_chunk_0"])
        assert worker.run_pending() == 1

        index.delete_points.assert_called_once_with(["doc_chunk_0"])
        index.delete_document.assert_not_called()
        assert worker.metrics().pending_documents == 0

    def test_deletes_by_document_filter_without_ids(self, clock) -> None:
        index = MagicMock()
        worker = _worker(index, clock)

        worker.enqueue("doc")
        worker.run_pending()

        index.delete_document.assert_called_once_with("doc")

    def test_tasks_run_in_fifo_order(self, clock) -> None:
        index = MagicMock()
        worker = _worker(index, clock)

        for doc_id in ("a", "b", "c"):
            worker.enqueue(doc_id)
        worker.run_pending()

        assert [call.args[0] for call in index.delete_document.call_args_list] == ["a", "b", "c"]

    def test_failure_is_retried_after_backoff(self, clock) -> None:
        index = MagicMock()
        index.delete_document.side_effect = [RuntimeError("timeout"), None]
        worker = _worker(index, clock, base_backoff=2.0)

        worker.enqueue("doc")
        assert worker.run_pending() == 1
        metrics = worker.metrics()
        assert metrics.pending_documents == 1
        assert metrics.queue_depth == 1

        clock.advance(1.0)
        assert worker.run_pending() == 0

        clock.advance(1.0)
        assert worker.run_pending() == 1
        assert worker.metrics().pending_documents == 0
        assert worker.metrics().recent_failures == []

    def test_exhausted_retries_recorded(self, clock) -> None:
        index = MagicMock()
        index.delete_document.side_effect = RuntimeError("index unavailable")
        worker = _worker(index, clock, max_retries=2, base_backoff=1.0)

        worker.enqueue("doc")
        for _ in range(5):
            worker.run_pending()
            clock.advance(60)

        assert index.delete_document.call_count == 3
        metrics = worker.metrics()
        assert metrics.pending_documents == 0
        assert metrics.queue_depth == 0
        assert len(metrics.recent_failures) == 1
        failure = metrics.recent_failures[0]
        assert failure["document_id"] == "doc"
        assert failure["attempts"] == 3
        assert failure["error"] == "index unavailable"

    def test_enqueue_after_exhaustion_starts_fresh(self, clock) -> None:
        index = MagicMock()
        index.delete_document.side_effect = [RuntimeError("boom"), None]
        worker = _worker(index, clock, max_retries=0)

        worker.enqueue("doc")
        worker.run_pending()
        assert worker.metrics().pending_documents == 0

        worker.enqueue("doc")
        worker.run_pending()
        assert index.delete_document.call_count == 2

    def test_failure_history_is_bounded(self, clock) -> None:
        index = MagicMock()
        index.delete_document.side_effect = RuntimeError("boom")
        worker = _worker(index, clock, max_retries=0, failure_history_limit=2)

        for doc_id in ("a", "b", "c"):
            worker.enqueue(doc_id)
        worker.run_pending()

        assert [f["document_id"] for f in worker.metrics().recent_failures] == ["b", "c"]


class TestBackoff:
    def test_exponential_and_capped(self) -> None:
        worker = CleanupWorker(MagicMock(), config=CleanupConfig(base_backoff=2.0, max_backoff=10.0))
        assert [worker.backoff_delay(attempt) for attempt in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]


class TestMetrics:
    def test_idle_metrics(self) -> None:
        metrics = CleanupWorker(MagicMock()).metrics().to_dict()
        assert metrics == {
            "queue_depth": 0,
            "pending_documents": 0,
            "is_processing": False,
            "active_task": None,
            "retry_config": {"max_retries": 3, "base_backoff": 2.0, "max_backoff": 60.0},
            "recent_failures": [],
        }


class TestBackgroundThread:
    def test_worker_thread_processes_queue(self) -> None:
        index = MagicMock()
        worker = CleanupWorker(index)
        worker.start()
        try:
            worker.enqueue("doc", ["doc_chunk_0"])
            deadline = time.monotonic() + 5
            while worker.metrics().pending_documents and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            worker.stop()

        index.delete_points.assert_called_once_with(["doc_chunk_0"])
        assert worker.metrics().pending_documents == 0

    def test_start_is_idempotent(self) -> None:
        worker = CleanupWorker(MagicMock())
        worker.start()
        thread = worker._thread
        worker.start()
        assert worker._thread is thread
        worker.stop()
