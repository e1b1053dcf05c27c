"""Tests for batch queue ordering, retries and statistics."""
from datetime import timedelta

import pytest

from fieldtrack.models.location_models import PollingBatch, utcnow
from fieldtrack.services.batch_queue import InMemoryBatchQueue, SQLiteBatchQueue


@pytest.fixture(params=["memory", "sqlite"])
def queue(request, tmp_path):
    if request.param == "memory":
        yield InMemoryBatchQueue()
    else:
        queue = SQLiteBatchQueue(str(tmp_path / "queue.db"))
        yield queue
        queue.close()


def test_polling_batch_rejects_bad_members():
    with pytest.raises(ValueError):
        PollingBatch.create([], priority=1)
    with pytest.raises(ValueError):
        PollingBatch.create(["w1", "w1"], priority=1)


def test_dequeue_orders_by_priority_then_schedule(queue):
    now = utcnow()
    low = PollingBatch.create(["a"], priority=3, scheduled_at=now - timedelta(seconds=30))
    high_late = PollingBatch.create(["b"], priority=1, scheduled_at=now - timedelta(seconds=5))
    high_early = PollingBatch.create(["c"], priority=1, scheduled_at=now - timedelta(seconds=10))
    queue.enqueue([low, high_late, high_early])

    dequeued = queue.dequeue_due(2)

    assert [b.batch_id for b in dequeued] == [high_early.batch_id, high_late.batch_id]
    assert all(b.status == "processing" and b.started_at is not None for b in dequeued)
    assert queue.get(low.batch_id).status == "pending"


def test_batches_scheduled_in_future_are_not_due(queue):
    later = PollingBatch.create(["a"], priority=1, scheduled_at=utcnow() + timedelta(minutes=5))
    queue.enqueue([later])
    assert queue.dequeue_due(5) == []
    assert queue.next_due_at() == later.scheduled_at


def test_complete_records_counts(queue):
    batch = PollingBatch.create(["a", "b", "c"], priority=1)
    queue.enqueue([batch])
    queue.dequeue_due(1)

    done = queue.complete(batch.batch_id, 1, 2, "b: timeout; c: unavailable")

    assert done.status == "completed"
    assert (done.success_count, done.failure_count) == (1, 2)
    assert queue.get(batch.batch_id).completed_at is not None


def test_failed_implies_retries_exhausted(queue):
    """A batch only reaches failed once retry_count exceeds max_retries."""
    batch = PollingBatch.create(["a"], priority=1, max_retries=2)
    queue.enqueue([batch])

    statuses = []
    for _ in range(3):
        assert len(queue.dequeue_due(1)) == 1
        updated = queue.record_failure(batch.batch_id, "database unreachable", backoff_seconds=0)
        statuses.append(updated.status)

    assert statuses == ["pending", "pending", "failed"]
    failed = queue.get(batch.batch_id)
    assert failed.retry_count > failed.max_retries
    assert failed.completed_at is not None


def test_retry_backoff_moves_schedule(queue):
    batch = PollingBatch.create(["a"], priority=1)
    queue.enqueue([batch])
    queue.dequeue_due(1)

    before = utcnow()
    updated = queue.record_failure(batch.batch_id, "boom", backoff_seconds=10)

    assert updated.status == "pending"
    assert updated.scheduled_at >= before + timedelta(seconds=10)
    assert queue.dequeue_due(1) == []


def test_stats(queue):
    batches = [PollingBatch.create([f"w{i}"], priority=i + 1) for i in range(4)]
    queue.enqueue(batches)
    queue.dequeue_due(2)
    queue.complete(batches[0].batch_id, 1, 0)

    assert queue.stats() == {"pending": 2, "processing": 1, "completed": 1, "failed": 0, "total": 4}
    assert queue.count_by_status("pending") == 2
    assert len(queue.list_batches()) == 4


def test_sqlite_queue_recovers_interrupted_batches(tmp_path):
    path = str(tmp_path / "queue.db")
    queue = SQLiteBatchQueue(path)
    batch = PollingBatch.create(["a"], priority=1)
    queue.enqueue([batch])
    queue.dequeue_due(1)
    queue.close()

    reopened = SQLiteBatchQueue(path)
    assert reopened.recover_interrupted() == 1
    assert reopened.get(batch.batch_id).status == "pending"
    reopened.close()


def test_purge_before_keeps_unfinished_batches(queue):
    now = utcnow()
    done_old = PollingBatch.create(["a"], priority=1)
    failed_old = PollingBatch.create(["b"], priority=1)
    done_recent = PollingBatch.create(["c"], priority=1)
    pending_old = PollingBatch.create(["d"], priority=1, scheduled_at=now - timedelta(days=40))
    for batch, status, days in ((done_old, "completed", 40), (failed_old, "failed", 35), (done_recent, "completed", 1)):
        batch.status, batch.completed_at = status, now - timedelta(days=days)
    queue.enqueue([done_old, failed_old, done_recent, pending_old])

    assert queue.purge_before(now - timedelta(days=30)) == 2
    assert {b.batch_id for b in queue.list_batches()} == {done_recent.batch_id, pending_old.batch_id}
