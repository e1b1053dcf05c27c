"""Timer-driven polling cycle: roster -> batches -> queue -> pool."""
import asyncio
import time
from typing import List

from loguru import logger

from ..configurations.config import EngineSettings
from ..models.location_models import PollingBatch
from .batch_queue import BatchQueue
from .scheduler_service import SchedulerService
from .signals import EngineSignals
from .worker_pool import BatchWorkerPool
from .workforce_service import RosterProvider

CYCLE_JOB_ID = "polling_cycle"
ROSTER_RETRY_JOB_ID = "polling_cycle_roster_retry"


def chunk_worker_ids(worker_ids: List[str], batch_size: int) -> List[List[str]]:
    """Order-preserving dedupe, then fixed-size chunks."""
    unique = list(dict.fromkeys(worker_ids))
    return [unique[i:i + batch_size] for i in range(0, len(unique), batch_size)]


class PollingCoordinator:
    def __init__(self, roster: RosterProvider, queue: BatchQueue, pool: BatchWorkerPool,
                 settings: EngineSettings, signals: EngineSignals = None, scheduler: SchedulerService = None):
        self.roster = roster
        self.queue = queue
        self.pool = pool
        self.settings = settings
        self.signals = signals or EngineSignals()
        self.scheduler = scheduler or SchedulerService()
        self.is_running = False
        self.cycle_count = 0
        self._cycle_lock = asyncio.Lock()

    @property
    def polling_interval_seconds(self) -> float:
        return self.settings.polling_interval_ms / 1000.0

    async def start(self):
        """Schedule the polling cycle; the first cycle runs right away."""
        if self.is_running:
            logger.warning("Polling coordinator is already running")
            return
        self.is_running = True
        self.scheduler.add_interval_job(
            self.run_cycle,
            seconds=self.polling_interval_seconds,
            job_id=CYCLE_JOB_ID,
            name="Location Polling Cycle",
            run_immediately=True,
        )
        logger.success(f"🛰️ Polling coordinator started, interval {self.settings.polling_interval_ms}ms")

    async def stop(self):
        """Stop scheduling cycles and dispatching batches, then wait for in-flight work.

        The pool is halted before waiting on a running cycle, so batches that cycle
        enqueues stay pending.
        """
        if not self.is_running:
            return
        self.is_running = False
        self.scheduler.remove_job(CYCLE_JOB_ID)
        self.scheduler.remove_job(ROSTER_RETRY_JOB_ID)
        self.pool.halt()
        async with self._cycle_lock:
            pass
        await self.pool.stop()
        logger.info("🛑 Polling coordinator stopped")

    def set_polling_interval(self, interval_ms: int) -> int:
        """Validate and apply a new interval; it takes effect from the next cycle."""
        self.settings.update(polling_interval_ms=interval_ms)
        self.scheduler.reschedule_interval(CYCLE_JOB_ID, self.polling_interval_seconds)
        logger.info(f"⏱️ Polling interval set to {self.settings.polling_interval_ms}ms")
        return self.settings.polling_interval_ms

    async def run_cycle_now(self) -> List[PollingBatch]:
        logger.info("🔧 Manual polling cycle triggered")
        return await self.run_cycle()

    async def run_cycle(self) -> List[PollingBatch]:
        if self._cycle_lock.locked():
            logger.warning("⏭️ Polling cycle already in progress, skipping")
            return []

        async with self._cycle_lock:
            self.cycle_count += 1
            cycle = self.cycle_count
            started = time.monotonic()
            self.signals.emit("cycle_started", cycle=cycle)
            logger.info(f"🔄 Polling cycle {cycle} started")

            try:
                worker_ids = await asyncio.to_thread(self.roster.list_active_worker_ids)
                chunks = chunk_worker_ids(worker_ids, self.settings.batch_size)
                batches = [
                    PollingBatch.create(chunk, priority=index + 1, max_retries=self.settings.max_retries)
                    for index, chunk in enumerate(chunks)
                ]
                self.queue.enqueue(batches)
            except Exception as e:
                self._on_cycle_failure(cycle, e)
                return []

            self.pool.trigger()
            duration_ms = int((time.monotonic() - started) * 1000)
            self.signals.emit(
                "cycle_completed",
                cycle=cycle,
                worker_count=sum(len(b.member_ids) for b in batches),
                batch_count=len(batches),
                duration_ms=duration_ms,
            )
            logger.success(f"✅ Polling cycle {cycle}: {len(batches)} batches enqueued in {duration_ms}ms")
            return batches

    def _on_cycle_failure(self, cycle: int, error: Exception):
        retry_in = self.settings.roster_retry_seconds
        logger.error(f"❌ Polling cycle {cycle} failed: {error}")
        self.signals.emit("cycle_failed", cycle=cycle, error=str(error), retry_in_seconds=retry_in)
        if self.is_running:
            self.scheduler.schedule_once(
                self.run_cycle,
                delay_seconds=retry_in,
                job_id=ROSTER_RETRY_JOB_ID,
                name="Polling Cycle Retry",
            )
