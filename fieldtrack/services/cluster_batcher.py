"""Hourly deferred enrichment: cluster pending samples, one paced provider call per cluster."""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, TypeVar

from loguru import logger

from ..clustering.spatial_clusterer import build_clusterer
from ..configurations.config import Config, EngineSettings
from ..models.location_models import (
    ClusterBatchEntry,
    GeofenceZone,
    LocationSample,
    PlaceResolution,
    ProcessedLocation,
    utcnow,
)
from .enrichment_service import EnrichmentProvider
from .location_store import LocationStore
from .signals import EngineSignals

T = TypeVar("T")


class EnrichmentRateLimiter:
    """The single gateway to the paid enrichment provider.

    Batch work is handed out in sub-batches of ``sub_batch_size`` with a pause of
    ``pause_seconds`` between consecutive sub-batches. Both values are re-read from
    the settings on every run.
    """

    def __init__(self, provider: EnrichmentProvider, settings: EngineSettings):
        self.provider = provider
        self.settings = settings
        self.calls_made = 0

    async def resolve(self, latitude: float, longitude: float) -> PlaceResolution:
        self.calls_made += 1
        return await asyncio.to_thread(self.provider.resolve, latitude, longitude)

    async def paced(self, items: Sequence[T]) -> AsyncIterator[Sequence[T]]:
        size = self.settings.sub_batch_size
        for start in range(0, len(items), size):
            if start:
                await asyncio.sleep(self.settings.pause_seconds)
            yield items[start:start + size]


@dataclass
class ClusterRunReport:
    entries: int = 0
    clusters: int = 0
    provider_calls: int = 0
    enriched: int = 0
    failed_clusters: int = 0
    deferred_clusters: int = 0
    skipped: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class ClusterBatcher:
    def __init__(self, store: LocationStore, rate_limiter: EnrichmentRateLimiter, settings: EngineSettings,
                 signals: EngineSignals = None, strategy: str = None):
        self.store = store
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.signals = signals or EngineSignals()
        self.strategy = strategy or Config.CLUSTER_STRATEGY
        self.last_report: Optional[ClusterRunReport] = None
        self._running = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def wait_idle(self) -> None:
        """Return once no cluster run is in progress."""
        await self._idle.wait()

    def enqueue(self, sample: LocationSample) -> ClusterBatchEntry:
        entry = ClusterBatchEntry(sample=sample)
        self.store.enqueue_pending(entry)
        return entry

    def pending_count(self) -> int:
        return self.store.pending_count()

    async def enrich_immediately(self, sample: LocationSample, zone: GeofenceZone = None) -> Optional[ProcessedLocation]:
        """Enrich one sample now.

        Inside a zone the zone itself names the place and no provider call is made.
        If the provider fails the sample goes to the pending queue and ``None`` is returned.
        """
        if zone is not None:
            location = ProcessedLocation.from_sample(sample, PlaceResolution(zone.name, zone.zone_type), "geofence")
            self.store.append_processed_location(location)
            logger.info(f"🏢 {sample.worker_id} resolved from zone '{zone.name}' without a provider call")
            return location

        try:
            place = await self.rate_limiter.resolve(sample.latitude, sample.longitude)
        except Exception as e:
            logger.warning(f"⚠️ Immediate enrichment failed for {sample.worker_id}, deferring to cluster run: {e}")
            self.enqueue(sample)
            return None

        location = ProcessedLocation.from_sample(sample, place, "provider")
        self.store.append_processed_location(location)
        return location

    async def run(self) -> ClusterRunReport:
        """Cluster every pending entry and enrich one representative per cluster.

        Runs never overlap; a run started while another is in progress is skipped.
        """
        if self._running:
            logger.warning("⏭️ Cluster run already in progress, skipping")
            return ClusterRunReport(skipped=True, finished_at=utcnow())

        self._running = True
        self._idle.clear()
        report = ClusterRunReport()
        try:
            entries = self.store.list_pending()
            report.entries = len(entries)
            if not entries:
                logger.info("📭 No pending samples to enrich")
                return report

            clusterer = build_clusterer(self.strategy, self.settings.cluster_radius_meters)
            clusters = clusterer.cluster(entries)
            report.clusters = len(clusters)

            budget = self.settings.max_calls_per_run
            selected = clusters if budget is None else clusters[:budget]
            report.deferred_clusters = len(clusters) - len(selected)
            if report.deferred_clusters:
                logger.warning(f"💰 Call budget {budget} reached, {report.deferred_clusters} clusters stay pending")

            async for sub_batch in self.rate_limiter.paced(selected):
                for cluster in sub_batch:
                    await self._enrich_cluster(cluster, report)

            logger.success(
                f"✅ Cluster run: {report.entries} samples, {report.clusters} clusters, "
                f"{report.provider_calls} provider calls, {report.enriched} locations enriched"
            )
            return report
        finally:
            report.finished_at = utcnow()
            self._running = False
            self._idle.set()
            self.last_report = report
            if not report.skipped:
                self.signals.emit("cluster_run_completed", **report.to_dict())

    async def _enrich_cluster(self, cluster: List[ClusterBatchEntry], report: ClusterRunReport) -> None:
        seed = cluster[0].sample
        report.provider_calls += 1
        try:
            place = await self.rate_limiter.resolve(seed.latitude, seed.longitude)
            for entry in cluster:
                self.store.append_processed_location(ProcessedLocation.from_sample(entry.sample, place, "cluster"))
            self.store.remove_pending([entry.entry_id for entry in cluster])
        except Exception as e:
            report.failed_clusters += 1
            logger.error(f"❌ Cluster at ({seed.latitude:.5f}, {seed.longitude:.5f}) failed, "
                         f"{len(cluster)} samples stay pending: {e}")
            return
        report.enriched += len(cluster)
