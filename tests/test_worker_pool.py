"""Tests for the bounded batch worker pool."""
import asyncio
import threading

from conftest import (
    FailingStore,
    FakeEnrichment,
    FakeIngestion,
    make_settings,
)

from fieldtrack.geofence.membership_detector import GeofenceMembershipDetector
from fieldtrack.models.errors import MemberPollFailure
from fieldtrack.models.location_models import PollingBatch
from fieldtrack.services.batch_queue import InMemoryBatchQueue
from fieldtrack.services.cluster_batcher import ClusterBatcher, EnrichmentRateLimiter
from fieldtrack.services.geofence_service import StaticGeofenceProvider
from fieldtrack.services.location_store import InMemoryLocationStore
from fieldtrack.services.sample_processor import SampleProcessor
from fieldtrack.services.signals import EngineSignals
from fieldtrack.services.worker_pool import BatchWorkerPool


def build_pool(ingestion, settings=None, store=None):
    settings = settings or make_settings()
    store = store or InMemoryLocationStore()
    signals = EngineSignals()
    batcher = ClusterBatcher(store, EnrichmentRateLimiter(FakeEnrichment(), settings), settings, signals)
    processor = SampleProcessor(store, GeofenceMembershipDetector(settings), StaticGeofenceProvider(), batcher)
    queue = InMemoryBatchQueue()
    return BatchWorkerPool(queue, ingestion, processor, settings, signals), queue, store, signals


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_batch_completes_when_every_member_fails():
    """Member failures are counted, the batch itself still completes."""
    ingestion = FakeIngestion(failures={
        "w1": MemberPollFailure.UNAVAILABLE,
        "w2": MemberPollFailure.TIMEOUT,
        "w3": MemberPollFailure.UNAVAILABLE,
    })
    pool, queue, _, signals = build_pool(ingestion)
    batch = PollingBatch.create(["w1", "w2", "w3"], priority=1)
    queue.enqueue([batch])

    async def run():
        pool.trigger()
        await pool.join()

    asyncio.run(run())

    done = queue.get(batch.batch_id)
    assert done.status == "completed"
    assert (done.success_count, done.failure_count) == (0, 3)
    assert "w2: timeout" in done.error_details
    assert signals.recent(kind="batch_completed")[-1].payload["failure_count"] == 3


def test_successful_members_are_stored_and_routed():
    pool, queue, store, _ = build_pool(FakeIngestion())
    batch = PollingBatch.create(["w1", "w2"], priority=1)
    queue.enqueue([batch])

    async def run():
        pool.trigger()
        await pool.join()

    asyncio.run(run())

    assert queue.get(batch.batch_id).success_count == 2
    assert len(store.query_raw_samples("w1")) == 1
    # first sight of each worker goes to the hourly batch path
    assert store.pending_count() == 2


def test_concurrency_never_exceeds_ceiling():
    """With a ceiling of 2 and 5 batches, at most 2 are processing at any time."""
    gate = threading.Event()
    ingestion = FakeIngestion(gate=gate)
    pool, queue, _, _ = build_pool(ingestion, settings=make_settings(max_concurrent_batches=2))
    queue.enqueue([PollingBatch.create([f"w{i}"], priority=i + 1) for i in range(5)])
    observed = []

    async def run():
        pool.trigger()
        await wait_for(lambda: len(ingestion.started) == 2)
        await asyncio.sleep(0.05)
        observed.append(queue.count_by_status("processing"))
        observed.append(pool.active_batch_count)
        gate.set()
        while queue.count_by_status("completed") < 5:
            observed.append(queue.count_by_status("processing"))
            await asyncio.sleep(0.005)
        await pool.join()

    try:
        asyncio.run(run())
    finally:
        gate.set()

    assert observed[:2] == [2, 2]
    assert max(observed) <= 2
    assert queue.stats()["completed"] == 5


def test_persistence_failure_retries_then_fails():
    """Storage errors fail the whole batch; after max_retries it is marked failed."""
    pool, queue, _, signals = build_pool(
        FakeIngestion(), settings=make_settings(max_retries=2, retry_backoff_seconds=0), store=FailingStore()
    )
    batch = PollingBatch.create(["w1"], priority=1, max_retries=2)
    queue.enqueue([batch])

    async def run():
        pool.trigger()
        await wait_for(lambda: queue.get(batch.batch_id).status == "failed")
        await pool.join()

    asyncio.run(run())

    failed = queue.get(batch.batch_id)
    assert failed.retry_count == 3
    assert failed.retry_count > failed.max_retries
    errors = signals.recent(kind="batch_error")
    assert [s.payload["will_retry"] for s in errors] == [True, True, False]


def test_transient_persistence_failure_recovers():
    pool, queue, store, _ = build_pool(FakeIngestion(), store=FailingStore(failures=1))
    batch = PollingBatch.create(["w1"], priority=1)
    queue.enqueue([batch])

    async def run():
        pool.trigger()
        await wait_for(lambda: queue.get(batch.batch_id).status == "completed")

    asyncio.run(run())

    done = queue.get(batch.batch_id)
    assert done.retry_count == 1
    assert len(store.query_raw_samples("w1")) == 1


def test_stop_waits_for_in_flight_batches():
    """Stopping with 3 of 6 batches processing lets those 3 finish and leaves 3 pending."""
    gate = threading.Event()
    ingestion = FakeIngestion(gate=gate)
    pool, queue, _, _ = build_pool(ingestion, settings=make_settings(max_concurrent_batches=3))
    queue.enqueue([PollingBatch.create([f"w{i}"], priority=i + 1) for i in range(6)])

    async def run():
        pool.trigger()
        await wait_for(lambda: len(ingestion.started) == 3)
        stopping = asyncio.ensure_future(pool.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        assert queue.count_by_status("processing") == 3
        gate.set()
        await stopping

    try:
        asyncio.run(run())
    finally:
        gate.set()

    assert queue.stats() == {"pending": 3, "processing": 0, "completed": 3, "failed": 0, "total": 6}
    assert len(ingestion.started) == 3
    assert pool.active_batch_count == 0
