"""Geofence membership and transition detection (pure geometry, no network calls)."""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from ..configurations.config import EngineSettings
from ..models.location_models import GeofenceEvent, GeofenceZone, LocationSample
from .geometry import haversine_m, haversine_many


@dataclass(frozen=True)
class WorkerGeofenceState:
    zone_ids: FrozenSet[str]
    last_sample: LocationSample


class MembershipStateStore:
    """Most recent membership set per worker.

    Every read-modify-write of a worker's state must happen while holding
    ``lock_for(worker_id)``; overlapping batches can carry samples for the same worker.
    """

    def __init__(self):
        self._states: Dict[str, WorkerGeofenceState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, worker_id: str) -> asyncio.Lock:
        lock = self._locks.get(worker_id)
        if lock is None:
            lock = self._locks.setdefault(worker_id, asyncio.Lock())
        return lock

    def get(self, worker_id: str) -> Optional[WorkerGeofenceState]:
        return self._states.get(worker_id)

    def set(self, worker_id: str, state: WorkerGeofenceState) -> None:
        self._states[worker_id] = state

    def __len__(self) -> int:
        return len(self._states)


@dataclass
class MembershipResult:
    sample: LocationSample
    errors: List[str] = field(default_factory=list)
    zones_inside: List[Tuple[GeofenceZone, float]] = field(default_factory=list)
    events: List[GeofenceEvent] = field(default_factory=list)
    displacement_meters: Optional[float] = None
    significant_movement: bool = False
    zones_configured: bool = True
    stale: bool = False
    duplicate: bool = False

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def requires_immediate(self) -> bool:
        return self.valid and not self.stale and (bool(self.events) or self.significant_movement)

    @property
    def nearest_zone(self) -> Optional[GeofenceZone]:
        return self.zones_inside[0][0] if self.zones_inside else None


def zones_containing(sample: LocationSample, zones: Sequence[GeofenceZone]) -> List[Tuple[GeofenceZone, float]]:
    """Zones whose circle contains the sample, nearest center first, with distances in meters."""
    if not zones:
        return []
    distances = haversine_many(
        sample.latitude,
        sample.longitude,
        [z.center_lat for z in zones],
        [z.center_lng for z in zones],
    )
    radii = np.array([z.radius_meters for z in zones], dtype=float)
    inside = np.flatnonzero(distances <= radii)
    ordered = sorted(inside, key=lambda i: distances[i])
    return [(zones[i], float(distances[i])) for i in ordered]


class GeofenceMembershipDetector:
    def __init__(self, settings: EngineSettings, state_store: MembershipStateStore = None):
        self.settings = settings
        self.state_store = state_store or MembershipStateStore()

    async def evaluate(self, sample: LocationSample, zones: Sequence[GeofenceZone]) -> MembershipResult:
        """Classify one sample and update the worker's membership state.

        Invalid samples never touch the state. A sample not newer than the worker's
        last evaluated sample is reported as stale and produces no events.
        """
        errors = sample.validation_errors(self.settings.unreliable_accuracy_meters)
        if errors:
            logger.warning(f"🚫 Invalid sample for {sample.worker_id} at {sample.captured_at}: {'; '.join(errors)}")
            return MembershipResult(sample=sample, errors=errors)

        applicable = [z for z in zones if z.applies_to(sample.worker_id)]
        inside = zones_containing(sample, applicable)
        result = MembershipResult(sample=sample, zones_inside=inside, zones_configured=bool(applicable))

        async with self.state_store.lock_for(sample.worker_id):
            previous = self.state_store.get(sample.worker_id)
            if previous is not None and sample.captured_at <= previous.last_sample.captured_at:
                result.stale = True
                result.duplicate = sample.captured_at == previous.last_sample.captured_at
                return result

            current_ids = frozenset(z.zone_id for z, _ in inside)
            if previous is not None:
                applicable_ids = {z.zone_id for z in applicable}
                exited = sorted((previous.zone_ids & applicable_ids) - current_ids)
                entered = sorted(current_ids - previous.zone_ids)
                result.events = [
                    GeofenceEvent(sample.worker_id, zone_id, "exit", sample.captured_at) for zone_id in exited
                ] + [
                    GeofenceEvent(sample.worker_id, zone_id, "enter", sample.captured_at) for zone_id in entered
                ]
                last = previous.last_sample
                result.displacement_meters = haversine_m(last.latitude, last.longitude, sample.latitude, sample.longitude)
                result.significant_movement = result.displacement_meters > self.settings.significant_movement_meters

            self.state_store.set(sample.worker_id, WorkerGeofenceState(zone_ids=current_ids, last_sample=sample))

        for event in result.events:
            logger.info(f"📍 Geofence {event.transition}: worker {event.worker_id} zone {event.zone_id}")
        if result.significant_movement:
            logger.info(f"🚶 Significant movement for {sample.worker_id}: {result.displacement_meters:.0f}m")
        return result
