"""Per-sample pipeline: store raw, classify against geofences, audit, route to enrichment."""
import asyncio
from typing import Callable, List

from loguru import logger

from ..geofence.membership_detector import GeofenceMembershipDetector, MembershipResult
from ..models.errors import BatchPersistenceFailure, GeofenceConfigMissing, InvalidSample
from ..models.location_models import GeofenceZone, LocationSample, ValidationLogEntry
from .cluster_batcher import ClusterBatcher
from .geofence_service import GeofenceProvider
from .location_store import LocationStore

REJECTED = "rejected"
DUPLICATE = "duplicate"
IMMEDIATE = "immediate"
PENDING = "pending"


class SampleProcessor:
    def __init__(self, store: LocationStore, detector: GeofenceMembershipDetector,
                 geofences: GeofenceProvider, batcher: ClusterBatcher):
        self.store = store
        self.detector = detector
        self.geofences = geofences
        self.batcher = batcher

    def _persist(self, operation: Callable, *args):
        try:
            return operation(*args)
        except BatchPersistenceFailure:
            raise
        except Exception as e:
            raise BatchPersistenceFailure(f"{getattr(operation, '__name__', 'store operation')} failed: {e}") from e

    async def _zones(self) -> List[GeofenceZone]:
        try:
            return await asyncio.to_thread(self.geofences.list_zones)
        except Exception as e:
            logger.error(f"❌ Could not load geofence zones: {e}")
            return []

    async def process(self, sample: LocationSample) -> str:
        """Run one polled sample through the pipeline and return the route it took.

        Storage failures surface as BatchPersistenceFailure so that the whole batch is retried.
        """
        errors = sample.validation_errors(self.detector.settings.unreliable_accuracy_meters)
        sample_ref = self._persist(self.store.append_raw_sample, sample, "invalid" if errors else "valid")

        result = await self.detector.evaluate(sample, await self._zones())
        self._audit(sample_ref, result)

        if not result.valid:
            return REJECTED
        if result.duplicate:
            logger.debug(f"Duplicate fix for {sample.worker_id} at {sample.captured_at}, already routed")
            return DUPLICATE

        if result.requires_immediate:
            location = await self.batcher.enrich_immediately(sample, result.nearest_zone)
            if location is not None:
                return IMMEDIATE
            return PENDING

        self._persist(self.batcher.enqueue, sample)
        return PENDING

    def _audit(self, sample_ref: int, result: MembershipResult) -> None:
        sample = result.sample
        entries = []
        if not result.valid:
            error = InvalidSample(result.errors)
            entries.append(ValidationLogEntry(
                sample_ref=sample_ref,
                worker_id=sample.worker_id,
                result="fail",
                details={
                    "error": str(error),
                    "reasons": error.reasons,
                    "latitude": sample.latitude,
                    "longitude": sample.longitude,
                    "accuracy_meters": sample.accuracy_meters,
                },
                action_taken="rejected",
            ))
        elif result.stale:
            return
        else:
            if not result.zones_configured:
                warning = GeofenceConfigMissing(f"No geofence zones apply to worker {sample.worker_id}")
                entries.append(ValidationLogEntry(
                    sample_ref=sample_ref,
                    worker_id=sample.worker_id,
                    result="warning",
                    details={"error": str(warning)},
                ))
            distances = {zone.zone_id: distance for zone, distance in result.zones_inside}
            for event in result.events:
                entries.append(ValidationLogEntry(
                    sample_ref=sample_ref,
                    worker_id=sample.worker_id,
                    result="pass",
                    details={
                        "zone_id": event.zone_id,
                        "transition": event.transition,
                        "distance_meters": distances.get(event.zone_id),
                        "sample_timestamp": event.sample_timestamp.isoformat(),
                    },
                    action_taken="immediate_enrichment",
                ))

        for entry in entries:
            self._persist(self.store.append_validation_log_entry, entry)
