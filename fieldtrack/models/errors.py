"""Error taxonomy for the location engine."""
from typing import List, Optional


class FieldTrackError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(FieldTrackError):
    """A tunable was rejected; the change never takes effect."""


class RosterUnavailable(FieldTrackError):
    """The active-roster provider could not be reached. Transient, retried after a short backoff."""


class MemberPollFailure(FieldTrackError):
    """A single member could not be polled. Recorded on the batch, never fails it."""

    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"

    def __init__(self, worker_id: str, reason: str = UNAVAILABLE, message: Optional[str] = None):
        self.worker_id = worker_id
        self.reason = reason
        super().__init__(message or f"Poll failed for {worker_id}: {reason}")


class BatchPersistenceFailure(FieldTrackError):
    """Storage was unreachable while processing a batch. Drives retry/backoff."""


class InvalidSample(FieldTrackError):
    """Sample geometry or accuracy is out of bounds."""

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons))


class EnrichmentProviderFailure(FieldTrackError):
    """The enrichment provider failed for one lookup. Isolated per cluster."""


class GeofenceConfigMissing(FieldTrackError):
    """No geofence zones apply to a worker. Warning only."""
