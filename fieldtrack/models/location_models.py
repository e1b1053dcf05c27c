"""Data models for location samples, polling batches and geofence outputs."""
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime, timezone
import math
import uuid

BATCH_STATUSES = ("pending", "processing", "completed", "failed")
ZONE_TYPES = ("office", "field_site", "client_site", "home")
VALIDATION_RESULTS = ("pass", "warning", "fail")
TRANSITIONS = ("enter", "exit")
ENRICHMENT_SOURCES = ("geofence", "provider", "cluster")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so stored keys compare consistently."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class LocationSample:
    worker_id: str
    captured_at: datetime
    latitude: float
    longitude: float
    accuracy_meters: float
    altitude: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    device_meta: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.worker_id or not isinstance(self.worker_id, str):
            raise ValueError("worker_id must be a non-empty string")
        if not isinstance(self.captured_at, datetime):
            raise ValueError("captured_at must be a datetime object")
        object.__setattr__(self, "captured_at", as_utc(self.captured_at))

    def validation_errors(self, unreliable_accuracy_meters: float) -> List[str]:
        """Reasons this sample must not be enriched; empty when the sample is usable."""
        non_finite = [
            name for name in ("latitude", "longitude", "accuracy_meters")
            if not math.isfinite(getattr(self, name))
        ]
        if non_finite:
            return [f"{name} is not a finite number" for name in non_finite]

        errors = []
        if not -90.0 <= self.latitude <= 90.0:
            errors.append(f"latitude {self.latitude} out of range [-90, 90]")
        if not -180.0 <= self.longitude <= 180.0:
            errors.append(f"longitude {self.longitude} out of range [-180, 180]")
        if self.accuracy_meters < 0:
            errors.append(f"accuracy {self.accuracy_meters} is negative")
        elif self.accuracy_meters > unreliable_accuracy_meters:
            errors.append(f"accuracy {self.accuracy_meters}m worse than {unreliable_accuracy_meters}m")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "captured_at": self.captured_at.isoformat(),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_meters": self.accuracy_meters,
            "altitude": self.altitude,
            "heading": self.heading,
            "speed": self.speed,
            "device_meta": self.device_meta,
        }


@dataclass(frozen=True)
class RawSampleRecord:
    """A sample as kept in the raw append log."""

    sample_ref: int
    sample: LocationSample
    validation_status: str = "valid"
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = self.sample.to_dict()
        data.update(
            sample_ref=self.sample_ref,
            validation_status=self.validation_status,
            received_at=self.received_at.isoformat(),
        )
        return data


@dataclass
class PollingBatch:
    batch_id: str
    member_ids: Tuple[str, ...]
    priority: int
    scheduled_at: datetime
    status: str = "pending"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0
    max_retries: int = 3
    error_details: Optional[str] = None

    def __post_init__(self):
        if not self.batch_id or not isinstance(self.batch_id, str):
            raise ValueError("batch_id must be a non-empty string")
        self.member_ids = tuple(self.member_ids)
        if not self.member_ids:
            raise ValueError("member_ids must not be empty")
        if len(set(self.member_ids)) != len(self.member_ids):
            raise ValueError("member_ids must be unique")
        if not isinstance(self.scheduled_at, datetime):
            raise ValueError("scheduled_at must be a datetime object")
        if self.status not in BATCH_STATUSES:
            raise ValueError("status must be one of: pending, processing, completed, failed")

    @classmethod
    def create(cls, member_ids, priority: int, max_retries: int = 3, scheduled_at: datetime = None) -> "PollingBatch":
        return cls(
            batch_id=f"batch-{uuid.uuid4().hex[:12]}",
            member_ids=tuple(member_ids),
            priority=priority,
            scheduled_at=scheduled_at or utcnow(),
            max_retries=max_retries,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def copy(self) -> "PollingBatch":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "member_ids": list(self.member_ids),
            "status": self.status,
            "priority": self.priority,
            "scheduled_at": self.scheduled_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_details": self.error_details,
        }


@dataclass(frozen=True)
class GeofenceZone:
    zone_id: str
    name: str
    center_lat: float
    center_lng: float
    radius_meters: float
    zone_type: str = "office"
    owner_worker_id: Optional[str] = None

    def __post_init__(self):
        if not self.zone_id:
            raise ValueError("zone_id must be a non-empty string")
        if self.radius_meters <= 0:
            raise ValueError("radius_meters must be positive")
        if self.zone_type not in ZONE_TYPES:
            raise ValueError(f"zone_type must be one of: {', '.join(ZONE_TYPES)}")

    def applies_to(self, worker_id: str) -> bool:
        return self.owner_worker_id is None or self.owner_worker_id == worker_id


@dataclass(frozen=True)
class GeofenceEvent:
    worker_id: str
    zone_id: str
    transition: str
    sample_timestamp: datetime

    def __post_init__(self):
        if self.transition not in TRANSITIONS:
            raise ValueError("transition must be one of: enter, exit")


@dataclass(frozen=True)
class ClusterBatchEntry:
    sample: LocationSample
    enqueued_at: datetime = field(default_factory=utcnow)
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class PlaceResolution:
    place_name: str
    place_type: str


@dataclass(frozen=True)
class ProcessedLocation:
    worker_id: str
    captured_at: datetime
    latitude: float
    longitude: float
    resolved_place_name: str
    place_type: str
    enriched_at: datetime = field(default_factory=utcnow)
    source: str = "cluster"

    def __post_init__(self):
        object.__setattr__(self, "captured_at", as_utc(self.captured_at))
        if self.source not in ENRICHMENT_SOURCES:
            raise ValueError(f"source must be one of: {', '.join(ENRICHMENT_SOURCES)}")

    @property
    def key(self) -> Tuple[str, datetime]:
        return (self.worker_id, self.captured_at)

    @classmethod
    def from_sample(cls, sample: LocationSample, place: PlaceResolution, source: str) -> "ProcessedLocation":
        return cls(
            worker_id=sample.worker_id,
            captured_at=sample.captured_at,
            latitude=sample.latitude,
            longitude=sample.longitude,
            resolved_place_name=place.place_name,
            place_type=place.place_type,
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "captured_at": self.captured_at.isoformat(),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "resolved_place_name": self.resolved_place_name,
            "place_type": self.place_type,
            "enriched_at": self.enriched_at.isoformat(),
            "source": self.source,
        }


@dataclass(frozen=True)
class ValidationLogEntry:
    sample_ref: int
    worker_id: str
    result: str
    details: Dict[str, Any]
    validation_type: str = "geofence"
    validated_by: str = "system"
    action_taken: Optional[str] = None
    validated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.result not in VALIDATION_RESULTS:
            raise ValueError("result must be one of: pass, warning, fail")
        if not isinstance(self.details, dict):
            raise ValueError("details must be a dictionary")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sample_ref": self.sample_ref,
            "worker_id": self.worker_id,
            "validation_type": self.validation_type,
            "result": self.result,
            "details": self.details,
            "validated_by": self.validated_by,
            "action_taken": self.action_taken,
            "validated_at": self.validated_at.isoformat(),
        }
