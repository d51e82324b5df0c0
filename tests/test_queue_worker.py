"""Tests for the queue worker pool."""

import time

import pytest

from mailsweep.models import Classification, QueueStatus
from mailsweep.queue_worker import WorkerPool
from mailsweep.storage import StorageError
from mailsweep.structured_logger import StructuredLogger

from conftest import FakeClassifier, make_message


def make_pool(storage, classifier, **kwargs):
    kwargs.setdefault("run_threads", False)
    return WorkerPool(storage, classifier, **kwargs)


def drain(pool, rounds=50):
    """Tick every worker in slot order until nothing is left to claim."""
    for _ in range(rounds):
        if not any([pool.tick(state.id) for state in pool.workers]):
            return


class TestPoolLifecycle:
    def test_start_names_workers_in_order(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(3)

        assert pool.is_running
        assert [w.id for w in pool.workers] == ["worker-0", "worker-1", "worker-2"]
        assert all(w.running for w in pool.workers)

    def test_start_uses_worker_count_setting(self, enabled_storage, classifier):
        enabled_storage.set_setting("worker_count", "2")
        pool = make_pool(enabled_storage, classifier)
        pool.start()
        assert len(pool.workers) == 2

    def test_start_is_idempotent(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(2)
        pool.start(5)
        assert len(pool.workers) == 2

    def test_stop_clears_workers(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(2)
        pool.stop()
        assert not pool.is_running
        assert pool.workers == []

    def test_start_recovers_stale_items(self, enabled_storage, classifier):
        enabled_storage.enqueue(make_message(1))
        enabled_storage.claim_next("worker-9")
        time.sleep(0.01)

        pool = make_pool(enabled_storage, classifier, stale_after=0.001)
        pool.start(1)

        assert enabled_storage.queue_stats()["processing"] == 0
        assert pool.tick("worker-0") is True


class TestResize:
    def test_grow_keeps_existing_workers(self, enabled_storage, classifier):
        for n in range(3):
            enabled_storage.enqueue(make_message(n))
        pool = make_pool(enabled_storage, classifier)
        pool.start(2)
        pool.tick("worker-0")
        pool.tick("worker-0")
        pool.tick("worker-1")

        pool.resize(5)

        workers = pool.workers
        assert [w.id for w in workers] == [f"worker-{i}" for i in range(5)]
        assert workers[0].processed_count == 2
        assert workers[1].processed_count == 1
        assert all(w.processed_count == 0 for w in workers[2:])

    def test_shrink_removes_highest_slots(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(4)

        pool.resize(2)

        assert [w.id for w in pool.workers] == ["worker-0", "worker-1"]
        assert pool.tick("worker-3") is False

    def test_regrow_after_shrink_is_contiguous(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(4)
        pool.resize(1)
        pool.resize(3)
        assert [w.id for w in pool.workers] == ["worker-0", "worker-1", "worker-2"]

    def test_resize_to_zero(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(2)
        pool.resize(0)
        assert pool.workers == []
        assert pool.is_running

    def test_negative_count_rejected(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(1)
        with pytest.raises(ValueError):
            pool.resize(-1)

    def test_resize_requires_running_pool(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        with pytest.raises(RuntimeError):
            pool.resize(2)

    def test_sync_follows_setting(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(1)

        enabled_storage.set_setting("worker_count", "3")
        pool.sync_worker_count()
        assert len(pool.workers) == 3

    def test_sync_ignored_when_stopped(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        enabled_storage.set_setting("worker_count", "3")
        pool.sync_worker_count()
        assert pool.workers == []


class TestTick:
    def test_tick_classifies_and_stores(self, enabled_storage, classifier):
        item_id = enabled_storage.enqueue(make_message(1, subject="Spam offer"))
        pool = make_pool(enabled_storage, classifier)
        pool.start(1)

        assert pool.tick("worker-0") is True

        item = enabled_storage.get_queue_item(item_id)
        assert item.status == QueueStatus.COMPLETED
        assert item.worker_id == "worker-0"
        assert item.result.classification == Classification.SPAM

        records = enabled_storage.list_emails()
        assert len(records) == 1
        assert records[0].classification == Classification.SPAM
        assert pool.workers[0].processed_count == 1
        assert pool.workers[0].current_item is None

    def test_empty_queue_is_idle(self, enabled_storage, classifier):
        pool = make_pool(enabled_storage, classifier)
        pool.start(1)
        assert pool.tick("worker-0") is False
        assert classifier.calls == []

    def test_disabled_queue_does_nothing(self, storage, classifier):
        storage.seed_settings({"queue_enabled": "false"})
        storage.enqueue(make_message(1))
        pool = make_pool(storage, classifier)
        pool.start(1)

        assert pool.tick("worker-0") is False
        assert storage.queue_stats()["pending"] == 1

    def test_stopped_worker_does_nothing(self, enabled_storage, classifier):
        enabled_storage.enqueue(make_message(1))
        pool = make_pool(enabled_storage, classifier)
        pool.start(1)
        pool.stop()

        assert pool.tick("worker-0") is False
        assert enabled_storage.queue_stats()["pending"] == 1

    def test_newsletter_queues_unsubscribe(self, enabled_storage, classifier):
        enabled_storage.enqueue(
            make_message(
                1,
                subject="Weekly news",
                headers={"List-Unsubscribe": "<https://news.test/u?id=1>"},
            )
        )
        pool = make_pool(enabled_storage, classifier)
        pool.start(1)
        pool.tick("worker-0")

        tasks = enabled_storage.pending_unsubscribe_tasks()
        assert len(tasks) == 1
        assert tasks[0].unsubscribe_url == "https://news.test/u?id=1"

    def test_classifier_error_fails_item(self, enabled_storage):
        def explode(from_addr, subject, body):
            raise RuntimeError("model crashed")

        item_id = enabled_storage.enqueue(make_message(1))
        pool = make_pool(enabled_storage, FakeClassifier(label_for=explode))
        pool.start(1)

        assert pool.tick("worker-0") is False

        item = enabled_storage.get_queue_item(item_id)
        assert item.status == QueueStatus.FAILED
        assert item.error == "model crashed"
        assert pool.workers[0].processed_count == 0
        assert pool.workers[0].current_item is None

    def test_unmarkable_failure_left_for_recovery(self, enabled_storage, monkeypatch):
        def explode(from_addr, subject, body):
            raise RuntimeError("model crashed")

        def broken_fail(item_id, error):
            raise StorageError("database is locked")

        item_id = enabled_storage.enqueue(make_message(1))
        monkeypatch.setattr(enabled_storage, "fail", broken_fail)
        pool = make_pool(enabled_storage, FakeClassifier(label_for=explode))
        pool.start(1)

        assert pool.tick("worker-0") is False
        assert enabled_storage.get_queue_item(item_id).status == QueueStatus.PROCESSING

        time.sleep(0.01)
        assert enabled_storage.recover_stale(0) == 1

    def test_audit_event_written(self, enabled_storage, classifier, tmp_path):
        audit_file = tmp_path / "audit.jsonl"
        enabled_storage.enqueue(make_message(1))
        pool = make_pool(enabled_storage, classifier, audit=StructuredLogger(str(audit_file)))
        pool.start(1)
        pool.tick("worker-0")

        lines = audit_file.read_text().splitlines()
        assert len(lines) == 1
        assert '"event_type": "item_classified"' in lines[0]
        assert '"worker_id": "worker-0"' in lines[0]


class TestDrainQueue:
    def test_ticks_drain_every_item_once(self, enabled_storage, classifier):
        for n in range(17):
            enabled_storage.enqueue(make_message(n))
        pool = make_pool(enabled_storage, classifier)
        pool.start(3)

        drain(pool)

        stats = enabled_storage.queue_stats()
        assert stats["completed"] == 17
        assert stats["pending"] == 0
        assert len(classifier.calls) == 17
        assert sum(w.processed_count for w in pool.workers) == 17

    def test_threads_drain_queue(self, enabled_storage, classifier):
        for n in range(17):
            enabled_storage.enqueue(make_message(n))
        pool = WorkerPool(enabled_storage, classifier, tick_interval=0.01)
        pool.start(3)
        try:
            deadline = time.monotonic() + 20
            while enabled_storage.queue_stats()["completed"] < 17 and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            pool.stop()

        assert enabled_storage.queue_stats()["completed"] == 17
        assert len(enabled_storage.list_emails()) == 17

    def test_stats_include_workers(self, enabled_storage, classifier):
        enabled_storage.enqueue(make_message(1))
        pool = make_pool(enabled_storage, classifier)
        pool.start(2)

        stats = pool.get_stats()
        assert stats["pending"] == 1
        assert stats["running"] is True
        assert [w["id"] for w in stats["workers"]] == ["worker-0", "worker-1"]
