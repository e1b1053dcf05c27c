"""Priority-ordered queue of polling batches."""
import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from loguru import logger

from ..models.errors import BatchPersistenceFailure
from ..models.location_models import BATCH_STATUSES, PollingBatch, as_utc, utcnow


class BatchQueue(ABC):
    """Batches ordered by ``(priority, scheduled_at)``.

    Status and counters are only changed through these methods; callers get copies.
    """

    @abstractmethod
    def enqueue(self, batches: Iterable[PollingBatch]) -> None:
        pass

    @abstractmethod
    def dequeue_due(self, limit: int, now: datetime = None) -> List[PollingBatch]:
        """Atomically move up to ``limit`` due pending batches to ``processing``."""

    @abstractmethod
    def complete(self, batch_id: str, success_count: int, failure_count: int,
                 error_details: str = None) -> PollingBatch:
        pass

    @abstractmethod
    def record_failure(self, batch_id: str, error: str, backoff_seconds: float = 0.0) -> PollingBatch:
        """Count a batch-level failure: requeue while retries remain, otherwise mark ``failed``."""

    @abstractmethod
    def get(self, batch_id: str) -> Optional[PollingBatch]:
        pass

    @abstractmethod
    def list_batches(self, status: str = None) -> List[PollingBatch]:
        pass

    @abstractmethod
    def purge_before(self, cutoff: datetime) -> int:
        """Delete completed and failed batches that finished before ``cutoff``."""

    def count_by_status(self, status: str) -> int:
        return len(self.list_batches(status))

    def stats(self) -> Dict[str, int]:
        batches = self.list_batches()
        stats = {status: 0 for status in BATCH_STATUSES}
        for batch in batches:
            stats[batch.status] += 1
        stats["total"] = len(batches)
        return stats

    def next_due_at(self) -> Optional[datetime]:
        pending = self.list_batches("pending")
        return min((b.scheduled_at for b in pending), default=None)


def _apply_failure(batch: PollingBatch, error: str, backoff_seconds: float, now: datetime) -> None:
    batch.retry_count += 1
    batch.error_details = error
    if batch.retry_count <= batch.max_retries:
        batch.status = "pending"
        batch.scheduled_at = now + timedelta(seconds=backoff_seconds * batch.retry_count)
        batch.started_at = None
        logger.warning(f"🔁 Batch {batch.batch_id} requeued (retry {batch.retry_count}/{batch.max_retries}): {error}")
    else:
        batch.status = "failed"
        batch.completed_at = now
        logger.error(f"❌ Batch {batch.batch_id} permanently failed after {batch.retry_count} attempts: {error}")


class InMemoryBatchQueue(BatchQueue):
    def __init__(self):
        self._lock = threading.Lock()
        self._batches: Dict[str, PollingBatch] = {}

    def enqueue(self, batches):
        with self._lock:
            for batch in batches:
                self._batches[batch.batch_id] = batch.copy()

    def dequeue_due(self, limit, now=None):
        now = as_utc(now or utcnow())
        with self._lock:
            due = sorted(
                (b for b in self._batches.values() if b.status == "pending" and b.scheduled_at <= now),
                key=lambda b: (b.priority, b.scheduled_at),
            )[:max(limit, 0)]
            for batch in due:
                batch.status = "processing"
                batch.started_at = now
            return [b.copy() for b in due]

    def complete(self, batch_id, success_count, failure_count, error_details=None):
        with self._lock:
            batch = self._batches[batch_id]
            batch.status = "completed"
            batch.completed_at = utcnow()
            batch.success_count = success_count
            batch.failure_count = failure_count
            batch.error_details = error_details
            return batch.copy()

    def record_failure(self, batch_id, error, backoff_seconds=0.0):
        with self._lock:
            batch = self._batches[batch_id]
            _apply_failure(batch, error, backoff_seconds, utcnow())
            return batch.copy()

    def get(self, batch_id):
        with self._lock:
            batch = self._batches.get(batch_id)
            return batch.copy() if batch else None

    def list_batches(self, status=None):
        with self._lock:
            return [b.copy() for b in self._batches.values() if status is None or b.status == status]

    def purge_before(self, cutoff):
        cutoff = as_utc(cutoff)
        with self._lock:
            expired = [
                batch_id for batch_id, b in self._batches.items()
                if b.is_terminal and b.completed_at is not None and b.completed_at < cutoff
            ]
            for batch_id in expired:
                del self._batches[batch_id]
        return len(expired)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f").replace(tzinfo=timezone.utc)


class SQLiteBatchQueue(BatchQueue):
    """Durable queue in the ``location_polling_queue`` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:" and os.path.dirname(db_path):
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._tx() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS location_polling_queue (
                    batch_id TEXT PRIMARY KEY,
                    member_ids TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority INTEGER NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    error_details TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_polling_queue_order "
                "ON location_polling_queue(status, priority, scheduled_at)"
            )

    @contextmanager
    def _tx(self):
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                logger.error(f"❌ Batch queue error: {e}")
                raise BatchPersistenceFailure(str(e)) from e

    @staticmethod
    def _from_row(row: sqlite3.Row) -> PollingBatch:
        return PollingBatch(
            batch_id=row["batch_id"],
            member_ids=tuple(json.loads(row["member_ids"])),
            status=row["status"],
            priority=row["priority"],
            scheduled_at=_parse_ts(row["scheduled_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            error_details=row["error_details"],
        )

    def _save(self, conn: sqlite3.Connection, batch: PollingBatch) -> None:
        conn.execute(
            "INSERT INTO location_polling_queue (batch_id, member_ids, status, priority, scheduled_at, started_at, "
            "completed_at, success_count, failure_count, retry_count, max_retries, error_details) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (batch_id) DO UPDATE SET status = excluded.status, scheduled_at = excluded.scheduled_at, "
            "started_at = excluded.started_at, completed_at = excluded.completed_at, "
            "success_count = excluded.success_count, failure_count = excluded.failure_count, "
            "retry_count = excluded.retry_count, error_details = excluded.error_details",
            (
                batch.batch_id, json.dumps(list(batch.member_ids)), batch.status, batch.priority,
                _ts(batch.scheduled_at), _ts(batch.started_at), _ts(batch.completed_at),
                batch.success_count, batch.failure_count, batch.retry_count, batch.max_retries,
                batch.error_details,
            ),
        )

    def _load(self, conn: sqlite3.Connection, batch_id: str) -> PollingBatch:
        row = conn.execute("SELECT * FROM location_polling_queue WHERE batch_id = ?", (batch_id,)).fetchone()
        if row is None:
            raise KeyError(batch_id)
        return self._from_row(row)

    def enqueue(self, batches):
        with self._tx() as conn:
            for batch in batches:
                self._save(conn, batch)

    def dequeue_due(self, limit, now=None):
        now = as_utc(now or utcnow())
        if limit <= 0:
            return []
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM location_polling_queue WHERE status = 'pending' AND scheduled_at <= ? "
                "ORDER BY priority, scheduled_at LIMIT ?",
                (_ts(now), limit),
            ).fetchall()
            batches = [self._from_row(row) for row in rows]
            for batch in batches:
                batch.status = "processing"
                batch.started_at = now
                self._save(conn, batch)
            return batches

    def complete(self, batch_id, success_count, failure_count, error_details=None):
        with self._tx() as conn:
            batch = self._load(conn, batch_id)
            batch.status = "completed"
            batch.completed_at = utcnow()
            batch.success_count = success_count
            batch.failure_count = failure_count
            batch.error_details = error_details
            self._save(conn, batch)
            return batch

    def record_failure(self, batch_id, error, backoff_seconds=0.0):
        with self._tx() as conn:
            batch = self._load(conn, batch_id)
            _apply_failure(batch, error, backoff_seconds, utcnow())
            self._save(conn, batch)
            return batch

    def get(self, batch_id):
        with self._tx() as conn:
            try:
                return self._load(conn, batch_id)
            except KeyError:
                return None

    def list_batches(self, status=None):
        with self._tx() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM location_polling_queue ORDER BY priority, scheduled_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM location_polling_queue WHERE status = ? ORDER BY priority, scheduled_at",
                    (status,),
                ).fetchall()
        return [self._from_row(row) for row in rows]

    def purge_before(self, cutoff):
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM location_polling_queue WHERE status IN ('completed', 'failed') AND completed_at < ?",
                (_ts(cutoff),),
            )
            return cur.rowcount

    def recover_interrupted(self) -> int:
        """Return batches left in ``processing`` by a crashed process to ``pending``."""
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE location_polling_queue SET status = 'pending', started_at = NULL WHERE status = 'processing'"
            )
            if cur.rowcount:
                logger.warning(f"♻️ Recovered {cur.rowcount} interrupted batches")
            return cur.rowcount

    def close(self):
        with self._lock:
            self._conn.close()
