"""Wires the coordinator, queue, pool, detector and cluster batcher into one engine."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger

from ..configurations.config import Config, EngineSettings
from ..geofence.membership_detector import GeofenceMembershipDetector
from ..models.errors import ConfigurationError
from ..models.location_models import as_utc, utcnow
from .batch_queue import BatchQueue, InMemoryBatchQueue, SQLiteBatchQueue
from .cluster_batcher import ClusterBatcher, ClusterRunReport, EnrichmentRateLimiter
from .enrichment_service import EnrichmentProvider, build_enrichment_provider
from .geofence_service import CachedGeofenceProvider, GeofenceProvider, HttpGeofenceProvider, StaticGeofenceProvider
from .location_store import InMemoryLocationStore, LocationStore, SQLiteLocationStore
from .polling_coordinator import PollingCoordinator
from .sample_processor import SampleProcessor
from .scheduler_service import SchedulerService
from .signals import EngineSignals
from .worker_pool import BatchWorkerPool
from .workforce_service import IngestionClient, RosterProvider, WorkforceApiService

CLUSTER_JOB_ID = "hourly_cluster_enrichment"
RETENTION_JOB_ID = "daily_data_retention"

_UNSET = object()


class GeoTrackingEngine:
    def __init__(
        self,
        roster: RosterProvider,
        ingestion: IngestionClient,
        geofences: GeofenceProvider,
        enrichment: EnrichmentProvider,
        store: LocationStore = None,
        queue: BatchQueue = None,
        settings: EngineSettings = None,
        signals: EngineSignals = None,
        scheduler: SchedulerService = None,
        cluster_strategy: str = None,
        cluster_run_minute: str = None,
        retention_days: int = None,
        retention_run_hour: str = None,
    ):
        self.settings = settings or EngineSettings.from_config()
        self.settings.validate()
        self.signals = signals or EngineSignals()
        self.scheduler = scheduler or SchedulerService()
        self.store = store or InMemoryLocationStore()
        self.queue = queue or InMemoryBatchQueue()
        self.cluster_run_minute = cluster_run_minute or Config.CLUSTER_RUN_MINUTE
        self.retention_days = retention_days or Config.DATA_RETENTION_DAYS
        self.retention_run_hour = retention_run_hour or Config.RETENTION_RUN_HOUR
        self.geofences = geofences

        self.detector = GeofenceMembershipDetector(self.settings)
        self.rate_limiter = EnrichmentRateLimiter(enrichment, self.settings)
        self.batcher = ClusterBatcher(self.store, self.rate_limiter, self.settings, self.signals, cluster_strategy)
        self.processor = SampleProcessor(self.store, self.detector, geofences, self.batcher)
        self.pool = BatchWorkerPool(self.queue, ingestion, self.processor, self.settings, self.signals)
        self.coordinator = PollingCoordinator(roster, self.queue, self.pool, self.settings, self.signals, self.scheduler)
        self.is_running = False

    async def start(self):
        if self.is_running:
            logger.warning("Engine is already running")
            return

        logger.info("🚀 Starting location engine...")
        if hasattr(self.queue, "recover_interrupted"):
            self.queue.recover_interrupted()
        self.pool.start()
        await self.coordinator.start()
        self.scheduler.add_cron_job(
            self.batcher.run,
            job_id=CLUSTER_JOB_ID,
            name="Hourly Cluster Enrichment",
            minute=self.cluster_run_minute,
        )
        self.scheduler.add_cron_job(
            self.purge_expired_data,
            job_id=RETENTION_JOB_ID,
            name="Daily Data Retention",
            hour=self.retention_run_hour,
            minute=0,
        )
        self.scheduler.start_scheduler()
        self.is_running = True
        self.signals.emit("engine_started", config=self.settings.to_dict())
        logger.success("✅ Location engine started")

    async def stop(self):
        if not self.is_running:
            logger.warning("Engine is not running")
            return

        logger.info("🛑 Stopping location engine...")
        self.scheduler.remove_job(CLUSTER_JOB_ID)
        self.scheduler.remove_job(RETENTION_JOB_ID)
        await self.coordinator.stop()
        await self.pool.stop()
        if self.batcher.is_running:
            logger.info("⏳ Waiting for the cluster run in progress")
            await self.batcher.wait_idle()
        self.scheduler.stop_scheduler()
        self.is_running = False
        self.signals.emit("engine_stopped", queue_stats=self.queue.stats())
        logger.success("✅ Location engine stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "active_batch_count": self.pool.active_batch_count,
            "current_config": self.settings.to_dict(),
            "queue_stats": self.queue.stats(),
            "pending_enrichment": self.batcher.pending_count(),
            "collection_stats": self.pool.stats.to_dict(),
            "enrichment_provider_calls": self.rate_limiter.calls_made,
            "cycle_count": self.coordinator.cycle_count,
            "cluster_run_in_progress": self.batcher.is_running,
            "last_cluster_run": self.batcher.last_report.to_dict() if self.batcher.last_report else None,
            "scheduler": self.scheduler.get_scheduler_status(),
        }

    def set_polling_interval(self, interval_ms: int) -> int:
        return self.coordinator.set_polling_interval(interval_ms)

    def set_max_concurrent_batches(self, value: int) -> int:
        self.settings.update(max_concurrent_batches=value)
        logger.info(f"⚙️ max_concurrent_batches set to {self.settings.max_concurrent_batches}")
        self.pool.trigger()
        return self.settings.max_concurrent_batches

    def set_clustering(self, cluster_radius_meters=_UNSET, sub_batch_size=_UNSET, pause_seconds=_UNSET,
                       max_calls_per_run=_UNSET) -> Dict[str, Any]:
        """Change clustering and pacing tunables together; all or nothing."""
        requested = {
            "cluster_radius_meters": cluster_radius_meters,
            "sub_batch_size": sub_batch_size,
            "pause_seconds": pause_seconds,
            "max_calls_per_run": max_calls_per_run,
        }
        changes = {name: value for name, value in requested.items() if value is not _UNSET}
        self.settings.update(**changes)
        if changes:
            logger.info(f"⚙️ Clustering settings updated: {changes}")
        return self.clustering_settings()

    def clustering_settings(self) -> Dict[str, Any]:
        return {
            "cluster_radius_meters": self.settings.cluster_radius_meters,
            "sub_batch_size": self.settings.sub_batch_size,
            "pause_seconds": self.settings.pause_seconds,
            "max_calls_per_run": self.settings.max_calls_per_run,
            "strategy": self.batcher.strategy,
        }

    async def backfill(self, start: datetime, end: datetime, worker_id: str = None,
                       run_now: bool = True) -> Dict[str, Any]:
        """Queue stored samples in ``[start, end]`` that were never enriched, optionally running a cluster pass."""
        if as_utc(start) > as_utc(end):
            raise ConfigurationError("Backfill start must not be after end")

        records = self.store.find_unprocessed_samples(start, end, worker_id)
        for record in records:
            self.batcher.enqueue(record.sample)
        logger.info(f"🧹 Backfill queued {len(records)} samples between {start} and {end}")

        report: Optional[ClusterRunReport] = await self.batcher.run() if run_now else None
        return {"samples_queued": len(records), "cluster_run": report.to_dict() if report else None}

    async def run_cluster_batch(self) -> ClusterRunReport:
        logger.info("🔧 Manual cluster run triggered")
        return await self.batcher.run()

    async def run_cycle_now(self):
        return await self.coordinator.run_cycle_now()

    def purge_expired_data(self, now: datetime = None) -> Dict[str, int]:
        """Delete raw samples, validation entries and finished batches older than the retention window."""
        cutoff = as_utc(now or utcnow()) - timedelta(days=self.retention_days)
        try:
            purged = self.store.purge_before(cutoff)
            purged["batches"] = self.queue.purge_before(cutoff)
        except Exception as e:
            logger.error(f"❌ Data retention cleanup failed: {e}")
            raise
        logger.success(f"🧹 Purged data older than {self.retention_days} days: {purged}")
        return purged

    def refresh_geofences(self) -> bool:
        """Drop cached zones so the next sample reloads them; False when nothing is cached."""
        if not isinstance(self.geofences, CachedGeofenceProvider):
            return False
        self.geofences.invalidate()
        logger.info("🔄 Geofence cache invalidated")
        return True


def build_engine_from_config() -> GeoTrackingEngine:
    Config.validate()

    if Config.STORAGE_BACKEND == "memory":
        store, queue = InMemoryLocationStore(), InMemoryBatchQueue()
    else:
        store, queue = SQLiteLocationStore(Config.SQLITE_PATH), SQLiteBatchQueue(Config.SQLITE_PATH)

    if Config.GEOFENCE_ZONES_FILE:
        geofences = StaticGeofenceProvider.from_file(Config.GEOFENCE_ZONES_FILE)
    else:
        geofences = CachedGeofenceProvider(HttpGeofenceProvider())

    workforce = WorkforceApiService()
    return GeoTrackingEngine(
        roster=workforce,
        ingestion=workforce,
        geofences=geofences,
        enrichment=build_enrichment_provider(),
        store=store,
        queue=queue,
    )
