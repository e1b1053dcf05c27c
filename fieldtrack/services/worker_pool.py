"""Bounded concurrent executor that drains the batch queue."""
import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from ..configurations.config import EngineSettings
from ..models.errors import BatchPersistenceFailure, MemberPollFailure
from ..models.location_models import LocationSample, PollingBatch, utcnow
from .batch_queue import BatchQueue
from .sample_processor import SampleProcessor
from .signals import EngineSignals
from .workforce_service import IngestionClient


@dataclass
class CollectionStats:
    """Running totals over every member poll of every completed batch."""

    total_collected: int = 0
    failure_count: int = 0
    average_accuracy_meters: float = 0.0
    last_collection_at: Optional[datetime] = None
    accuracy_samples: int = 0

    @property
    def success_rate(self) -> float:
        attempts = self.total_collected + self.failure_count
        return round(self.total_collected / attempts * 100, 2) if attempts else 0.0

    def record_sample(self, sample: LocationSample, collected_at: datetime = None):
        self.total_collected += 1
        self.last_collection_at = collected_at or utcnow()
        if not math.isfinite(sample.accuracy_meters):
            return
        self.accuracy_samples += 1
        self.average_accuracy_meters += (sample.accuracy_meters - self.average_accuracy_meters) / self.accuracy_samples

    def record_failure(self):
        self.failure_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_collected": self.total_collected,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "average_accuracy_meters": round(self.average_accuracy_meters, 2),
            "last_collection_at": self.last_collection_at.isoformat() if self.last_collection_at else None,
        }


class BatchWorkerPool:
    """Runs at most ``settings.max_concurrent_batches`` batches at a time.

    The ceiling is re-read on every drain so runtime changes apply to the next
    dequeue. ``halt()`` stops dequeuing at once; ``stop()`` halts and then waits for
    in-flight batches. Neither cancels a member poll.
    """

    def __init__(self, queue: BatchQueue, ingestion: IngestionClient, processor: SampleProcessor,
                 settings: EngineSettings, signals: EngineSignals = None):
        self.queue = queue
        self.ingestion = ingestion
        self.processor = processor
        self.settings = settings
        self.signals = signals or EngineSignals()
        self.stats = CollectionStats()
        self._active: Dict[str, asyncio.Task] = {}
        self._retry_handles: List[asyncio.TimerHandle] = []
        self._drain_scheduled = False
        self._stopping = False

    @property
    def active_batch_count(self) -> int:
        return len(self._active)

    @property
    def is_stopping(self) -> bool:
        return self._stopping

    def start(self):
        self._stopping = False

    def trigger(self):
        """Request a drain on the running loop. Never blocks; no-op while stopping."""
        if self._stopping or self._drain_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drain_scheduled = True
        loop.call_soon(self._drain)

    def _drain(self):
        self._drain_scheduled = False
        if self._stopping:
            return
        capacity = self.settings.max_concurrent_batches - len(self._active)
        if capacity <= 0:
            return
        try:
            batches = self.queue.dequeue_due(capacity)
        except BatchPersistenceFailure as e:
            logger.error(f"❌ Could not dequeue batches: {e}")
            return
        for batch in batches:
            self._active[batch.batch_id] = asyncio.ensure_future(self._run(batch))
        if batches:
            logger.info(f"⚙️ Dispatched {len(batches)} batches ({len(self._active)} in flight)")

    async def _run(self, batch: PollingBatch):
        try:
            await self.process_batch(batch)
        finally:
            self._active.pop(batch.batch_id, None)
            self.trigger()

    async def _poll_member(self, worker_id: str) -> Tuple[Optional[LocationSample], Optional[str]]:
        try:
            sample = await asyncio.to_thread(self.ingestion.fetch_latest_sample, worker_id)
        except MemberPollFailure as e:
            logger.warning(f"📵 {worker_id}: {e.reason} ({e})")
            return None, f"{worker_id}: {e.reason}"
        except Exception as e:
            logger.warning(f"📵 {worker_id}: poll error {e}")
            return None, f"{worker_id}: {e}"

        try:
            await self.processor.process(sample)
        except BatchPersistenceFailure:
            raise
        except Exception as e:
            logger.error(f"❌ Processing sample for {worker_id} failed: {e}")
            return None, f"{worker_id}: {e}"
        return sample, None

    async def process_batch(self, batch: PollingBatch) -> Optional[PollingBatch]:
        """Poll every member of a dequeued batch and record the outcome on the queue."""
        logger.info(f"📦 Processing batch {batch.batch_id} ({len(batch.member_ids)} workers, priority {batch.priority})")
        try:
            results = await asyncio.gather(
                *(self._poll_member(worker_id) for worker_id in batch.member_ids),
                return_exceptions=True,
            )
            for outcome in results:
                if isinstance(outcome, BaseException):
                    raise outcome

            samples = [sample for sample, _ in results if sample is not None]
            failures = [error for sample, error in results if sample is None]
            error_details = "; ".join(failures[:20]) if failures else None
            completed = self.queue.complete(batch.batch_id, len(samples), len(failures), error_details)
        except Exception as e:
            return self._fail(batch, e)

        finished_at = utcnow()
        for sample in samples:
            self.stats.record_sample(sample, finished_at)
        for _ in failures:
            self.stats.record_failure()

        logger.success(f"✅ Batch {batch.batch_id} completed: {len(samples)} ok, {len(failures)} failed")
        self.signals.emit(
            "batch_completed",
            batch_id=batch.batch_id,
            success_count=len(samples),
            failure_count=len(failures),
        )
        return completed

    def _fail(self, batch: PollingBatch, error: Exception) -> Optional[PollingBatch]:
        logger.error(f"❌ Batch {batch.batch_id} failed: {error}")
        try:
            updated = self.queue.record_failure(batch.batch_id, str(error), self.settings.retry_backoff_seconds)
        except Exception as e:
            # left in processing; SQLiteBatchQueue.recover_interrupted picks it up on restart
            logger.error(f"❌ Could not record failure for batch {batch.batch_id}: {e}")
            return None

        will_retry = updated.status == "pending"
        self.signals.emit(
            "batch_error",
            batch_id=batch.batch_id,
            error=str(error),
            retry_count=updated.retry_count,
            will_retry=will_retry,
        )
        if will_retry and not self._stopping:
            loop = asyncio.get_running_loop()
            delay = self.settings.retry_backoff_seconds * updated.retry_count
            self._retry_handles = [h for h in self._retry_handles if h.when() > loop.time()]
            self._retry_handles.append(loop.call_later(delay, self.trigger))
        return updated

    async def join(self):
        """Wait until nothing is in flight and no drain is queued."""
        while self._active or self._drain_scheduled:
            if self._active:
                await asyncio.gather(*list(self._active.values()), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    def halt(self):
        """Stop dispatching: no batch enters processing after this call."""
        self._stopping = True
        for handle in self._retry_handles:
            handle.cancel()
        self._retry_handles.clear()

    async def stop(self):
        self.halt()
        if self._active:
            logger.info(f"⏳ Waiting for {len(self._active)} in-flight batches")
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)
        logger.info("🛑 Worker pool stopped")
