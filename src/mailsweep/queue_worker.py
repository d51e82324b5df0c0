"""Pool of queue workers that drain the durable classification queue."""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mailsweep.models import Classification, QueueItem, WorkerState
from mailsweep.storage import StorageError
from mailsweep.unsubscribe import extract_unsubscribe_info

if TYPE_CHECKING:
    from mailsweep.llm_client import LLMClient
    from mailsweep.storage import Storage
    from mailsweep.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

EMAIL_PREVIEW_CHARS = 200


class _Worker:
    """One pool slot: its state, its stop signal and the thread ticking it."""

    def __init__(self, state: WorkerState):
        self.state = state
        self.stop_event = threading.Event()
        self.thread: threading.Thread | None = None


class WorkerPool:
    """Named workers that poll the queue on a fixed tick.

    Each tick claims at most one item, so an empty queue leaves workers
    idling at ``tick_interval`` instead of hammering the store. Workers are
    kept in slot order: growing appends ``worker-N``, shrinking removes the
    highest slots first.
    """

    def __init__(
        self,
        storage: Storage,
        classifier: LLMClient,
        tick_interval: float = 1.0,
        stale_after: float | None = None,
        audit: StructuredLogger | None = None,
        run_threads: bool = True,
        join_timeout: float = 2.0,
    ):
        """Initialize the pool.

        Args:
            storage: Queue store shared by every worker
            classifier: Classifier called once per claimed item
            tick_interval: Seconds a worker waits between ticks
            stale_after: Age in seconds after which a processing item is
                returned to pending on start. None or 0 disables recovery.
            audit: Optional audit trail for classified items
            run_threads: Spawn a thread per worker. Tests pass False and
                drive ``tick`` directly.
            join_timeout: Seconds to wait for each thread on stop
        """
        self.storage = storage
        self.classifier = classifier
        self.tick_interval = tick_interval
        self.stale_after = stale_after
        self.audit = audit
        self.run_threads = run_threads
        self.join_timeout = join_timeout
        self._workers: list[_Worker] = []
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def workers(self) -> list[WorkerState]:
        """Snapshots of the live workers, in slot order."""
        with self._lock:
            return [dataclasses.replace(w.state) for w in self._workers]

    def start(self, count: int | None = None) -> None:
        """Start ``count`` workers, or the ``worker_count`` setting if omitted."""
        with self._lock:
            if self._running:
                return
            self._running = True

            if self.stale_after:
                self.storage.recover_stale(self.stale_after)

            if count is None:
                count = self._target_count()
            logger.info(f"Starting {count} queue worker(s)")
            for _ in range(count):
                self._spawn()

    def stop(self) -> None:
        """Stop all workers. In-flight items are allowed to finish."""
        with self._lock:
            self._running = False
            workers, self._workers = self._workers, []

        for worker in reversed(workers):
            self._signal_stop(worker)
        for worker in workers:
            if worker.thread and worker.thread is not threading.current_thread():
                worker.thread.join(timeout=self.join_timeout)
        logger.info("Queue workers stopped")

    def resize(self, new_count: int) -> None:
        """Grow or shrink the pool to ``new_count`` workers."""
        if new_count < 0:
            raise ValueError("Worker count cannot be negative")

        with self._lock:
            if not self._running:
                raise RuntimeError("Worker pool is not running")

            current = len(self._workers)
            if new_count > current:
                for _ in range(new_count - current):
                    self._spawn()
            elif new_count < current:
                removed = self._workers[new_count:]
                self._workers = self._workers[:new_count]
                for worker in reversed(removed):
                    self._signal_stop(worker)

        if new_count != current:
            logger.info(f"Resized worker pool from {current} to {new_count}")

    def sync_worker_count(self) -> None:
        """Resize to the ``worker_count`` setting if the pool is running."""
        if self._running:
            self.resize(self._target_count())

    def tick(self, worker_id: str) -> bool:
        """Run one unit of work for a worker. Returns True if an item was processed."""
        with self._lock:
            worker = next((w for w in self._workers if w.state.id == worker_id), None)
        if worker is None:
            return False
        return self._process_next_item(worker)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.storage.queue_stats())
        stats["workers"] = [state.to_dict() for state in self.workers]
        stats["running"] = self._running
        return stats

    def _spawn(self) -> None:
        worker_id = f"worker-{len(self._workers)}"
        worker = _Worker(WorkerState(id=worker_id, running=True, started_at=datetime.now()))
        self._workers.append(worker)

        if self.run_threads:
            worker.thread = threading.Thread(
                target=self._run, args=(worker,), name=worker_id, daemon=True
            )
            worker.thread.start()
        logger.info(f"Worker {worker_id} started")

    def _signal_stop(self, worker: _Worker) -> None:
        worker.state.running = False
        worker.stop_event.set()
        logger.info(f"Worker {worker.state.id} stopped")

    def _run(self, worker: _Worker) -> None:
        while not worker.stop_event.is_set():
            self._process_next_item(worker)
            worker.stop_event.wait(self.tick_interval)

    def _target_count(self) -> int:
        value = self.storage.get_setting("worker_count")
        try:
            return max(0, int(value)) if value is not None else 1
        except ValueError:
            logger.warning(f"Invalid worker_count setting {value!r}, using 1")
            return 1

    def _queue_enabled(self) -> bool:
        return self.storage.get_setting("queue_enabled") == "true"

    def _process_next_item(self, worker: _Worker) -> bool:
        state = worker.state
        if not state.running or worker.stop_event.is_set():
            return False

        item: QueueItem | None = None
        try:
            if not self._queue_enabled():
                return False

            item = self.storage.claim_next(state.id)
            if item is None:
                return False
            state.current_item = item.id

            result = self.classifier.classify_email(
                item.from_addr, item.subject, item.body_preview or ""
            )

            email_id = self.storage.insert_email(
                message_id=item.message_id,
                from_addr=item.from_addr,
                subject=item.subject,
                body_preview=(item.body_preview or "")[:EMAIL_PREVIEW_CHARS],
                date=item.email_date,
                result=result,
            )

            if email_id is not None and result.classification is Classification.NEWSLETTER:
                self._queue_unsubscribe(email_id, item)

            self.storage.complete(item.id, result)
            state.processed_count += 1

            logger.info(
                f"{state.id}: item {item.id} classified {result.classification.value} "
                f"({result.confidence:.2f})"
            )
            if self.audit:
                self.audit.log_item_classified(
                    worker_id=state.id,
                    item_id=item.id,
                    message_id=item.message_id,
                    classification=result.classification.value,
                    confidence=result.confidence,
                    reasoning=result.reasoning,
                )
            return True

        except Exception as e:
            logger.error(f"Worker {state.id} error: {e}", exc_info=True)
            if item is not None:
                self._mark_failed(item, e)
            return False
        finally:
            state.current_item = None

    def _queue_unsubscribe(self, email_id: int, item: QueueItem) -> None:
        info = extract_unsubscribe_info(item.headers, item.body_preview or "")
        if info.url:
            self.storage.add_unsubscribe_task(
                email_id=email_id,
                sender=item.from_addr,
                url=info.url,
                method=info.method,
            )
            logger.debug(f"Queued {info.method.value} unsubscribe for {item.from_addr}")

    def _mark_failed(self, item: QueueItem, error: Exception) -> None:
        try:
            self.storage.fail(item.id, str(error) or type(error).__name__)
        except (StorageError, sqlite3.Error) as fail_error:
            # Left in processing; recover_stale() returns it to pending later.
            logger.error(f"Could not mark item {item.id} failed: {fail_error}")
