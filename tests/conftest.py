"""Shared fakes for engine tests."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from fieldtrack.configurations.config import EngineSettings
from fieldtrack.models.errors import (
    BatchPersistenceFailure,
    EnrichmentProviderFailure,
    MemberPollFailure,
    RosterUnavailable,
)
from fieldtrack.models.location_models import GeofenceZone, LocationSample, PlaceResolution
from fieldtrack.services.enrichment_service import EnrichmentProvider
from fieldtrack.services.location_store import InMemoryLocationStore
from fieldtrack.services.workforce_service import IngestionClient, RosterProvider

BASE_TIME = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

# Office in Lahore used across geofence tests
OFFICE_LAT = 31.5204
OFFICE_LNG = 74.3587


def make_sample(worker_id="w1", lat=OFFICE_LAT, lng=OFFICE_LNG, accuracy=10.0, minutes=0):
    return LocationSample(
        worker_id=worker_id,
        captured_at=BASE_TIME + timedelta(minutes=minutes),
        latitude=lat,
        longitude=lng,
        accuracy_meters=accuracy,
    )


def make_settings(**overrides):
    values = dict(
        polling_interval_ms=180000,
        batch_size=50,
        max_concurrent_batches=6,
        max_retries=3,
        retry_backoff_seconds=0,
        roster_retry_seconds=30,
        cluster_radius_meters=100.0,
        sub_batch_size=50,
        pause_seconds=0,
        max_calls_per_run=None,
        significant_movement_meters=500.0,
        unreliable_accuracy_meters=1000.0,
    )
    values.update(overrides)
    return EngineSettings(**values)


class FakeRoster(RosterProvider):
    """With a ``gate`` the roster call blocks (in its worker thread) until the gate is set."""

    def __init__(self, worker_ids, failures=0, gate=None):
        self.worker_ids = list(worker_ids)
        self.failures = failures
        self.gate = gate
        self.calls = 0

    def list_active_worker_ids(self):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.failures > 0:
            self.failures -= 1
            raise RosterUnavailable("roster down")
        return list(self.worker_ids)


class FakeIngestion(IngestionClient):
    """Returns preset samples, or a default one away from the office.

    With a ``gate`` every poll blocks (in its worker thread) until the gate is set.
    """

    def __init__(self, samples=None, failures=None, gate=None):
        self.samples = dict(samples or {})
        self.failures = dict(failures or {})
        self.gate = gate
        self.started = []
        self._lock = threading.Lock()

    def fetch_latest_sample(self, worker_id):
        with self._lock:
            self.started.append(worker_id)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if worker_id in self.failures:
            raise MemberPollFailure(worker_id, self.failures[worker_id])
        if worker_id in self.samples:
            return self.samples[worker_id]
        return make_sample(worker_id, lat=OFFICE_LAT + 0.5, lng=OFFICE_LNG + 0.5)


class FakeEnrichment(EnrichmentProvider):
    def __init__(self, fail_when=None):
        self.calls = []
        self.fail_when = fail_when
        self._lock = threading.Lock()

    def resolve(self, latitude, longitude):
        with self._lock:
            self.calls.append((latitude, longitude))
        if self.fail_when is not None and self.fail_when(latitude, longitude):
            raise EnrichmentProviderFailure(f"no result for {latitude}, {longitude}")
        return PlaceResolution(place_name=f"Place {latitude:.3f},{longitude:.3f}", place_type="road")


class FailingStore(InMemoryLocationStore):
    """Raw appends fail until ``failures`` is used up (-1 = always)."""

    def __init__(self, failures=-1):
        super().__init__()
        self.failures = failures

    def append_raw_sample(self, sample, validation_status="valid"):
        if self.failures != 0:
            self.failures -= 1
            raise BatchPersistenceFailure("database unreachable")
        return super().append_raw_sample(sample, validation_status)


class RecordingScheduler:
    """Stands in for SchedulerService; records jobs instead of running them."""

    def __init__(self):
        self.interval_jobs = {}
        self.once_jobs = {}
        self.cron_jobs = {}
        self.removed = []
        self.is_running = False

    def start_scheduler(self):
        self.is_running = True

    def stop_scheduler(self):
        self.is_running = False

    def add_interval_job(self, func, seconds, job_id, name, run_immediately=False):
        self.interval_jobs[job_id] = (func, seconds)

    def add_cron_job(self, func, job_id, name, **cron_fields):
        self.cron_jobs[job_id] = (func, cron_fields)

    def schedule_once(self, func, delay_seconds, job_id, name):
        self.once_jobs[job_id] = (func, delay_seconds)

    def reschedule_interval(self, job_id, seconds):
        if job_id in self.interval_jobs:
            self.interval_jobs[job_id] = (self.interval_jobs[job_id][0], seconds)

    def remove_job(self, job_id):
        self.removed.append(job_id)
        found = job_id in self.interval_jobs or job_id in self.once_jobs or job_id in self.cron_jobs
        self.interval_jobs.pop(job_id, None)
        self.once_jobs.pop(job_id, None)
        self.cron_jobs.pop(job_id, None)
        return found

    def get_scheduler_status(self):
        return {"status": "running" if self.is_running else "stopped", "jobs": []}


@pytest.fixture
def office_zone():
    return GeofenceZone(
        zone_id="office-1",
        name="Head Office",
        center_lat=OFFICE_LAT,
        center_lng=OFFICE_LNG,
        radius_meters=100.0,
        zone_type="office",
    )


@pytest.fixture
def settings():
    return make_settings()
