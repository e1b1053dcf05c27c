"""Tests for the location store contract, run against both implementations."""
from datetime import timedelta

import pytest

from conftest import BASE_TIME, make_sample

from fieldtrack.models.location_models import (
    ClusterBatchEntry,
    PlaceResolution,
    ProcessedLocation,
    ValidationLogEntry,
)
from fieldtrack.services.location_store import InMemoryLocationStore, SQLiteLocationStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLocationStore()
    else:
        store = SQLiteLocationStore(str(tmp_path / "locations.db"))
        yield store
        store.close()


def test_raw_samples_round_trip_and_window(store):
    """Range queries are inclusive on both ends and ordered by capture time."""
    for minutes in (0, 3, 6, 9):
        store.append_raw_sample(make_sample(minutes=minutes))
    store.append_raw_sample(make_sample("w2", minutes=3))

    records = store.query_raw_samples("w1", BASE_TIME + timedelta(minutes=3), BASE_TIME + timedelta(minutes=6))
    assert [r.sample.captured_at for r in records] == [
        BASE_TIME + timedelta(minutes=3),
        BASE_TIME + timedelta(minutes=6),
    ]
    assert records[0].sample == make_sample(minutes=3)
    assert len(store.query_raw_samples("w1")) == 4


def test_invalid_samples_hidden_by_default(store):
    store.append_raw_sample(make_sample(minutes=0))
    store.append_raw_sample(make_sample(lat=95.0, minutes=1), validation_status="invalid")

    assert len(store.query_raw_samples("w1")) == 1
    everything = store.query_raw_samples("w1", include_invalid=True)
    assert [r.validation_status for r in everything] == ["valid", "invalid"]


def test_processed_location_upsert_by_worker_and_time(store):
    """Writing the same (worker, captured_at) twice keeps one row with the latest values."""
    sample = make_sample()
    store.append_processed_location(ProcessedLocation.from_sample(sample, PlaceResolution("Old", "road"), "cluster"))
    store.append_processed_location(ProcessedLocation.from_sample(sample, PlaceResolution("New", "office"), "geofence"))

    rows = store.query_processed_locations("w1")
    assert len(rows) == 1
    assert (rows[0].resolved_place_name, rows[0].place_type, rows[0].source) == ("New", "office", "geofence")


def test_validation_log_is_append_only(store):
    ref = store.append_raw_sample(make_sample())
    store.append_validation_log_entry(ValidationLogEntry(ref, "w1", "warning", {"error": "no zones"}))
    store.append_validation_log_entry(
        ValidationLogEntry(ref, "w1", "pass", {"zone_id": "office-1"}, action_taken="immediate_enrichment")
    )

    entries = store.query_validation_log("w1")
    assert [e.result for e in entries] == ["warning", "pass"]
    assert entries[1].details == {"zone_id": "office-1"}
    assert entries[1].action_taken == "immediate_enrichment"
    assert all(e.sample_ref == ref for e in entries)


def test_pending_backlog(store):
    first = ClusterBatchEntry(sample=make_sample("w1"), enqueued_at=BASE_TIME)
    second = ClusterBatchEntry(sample=make_sample("w2"), enqueued_at=BASE_TIME + timedelta(seconds=1))
    store.enqueue_pending(second)
    store.enqueue_pending(first)

    assert [e.entry_id for e in store.list_pending()] == [first.entry_id, second.entry_id]
    assert store.list_pending()[1].sample == make_sample("w2")
    assert store.pending_count() == 2
    assert store.remove_pending([first.entry_id, "missing"]) == 1
    assert store.pending_count() == 1


def test_find_unprocessed_samples(store):
    """Backfill candidates exclude processed, pending and invalid samples."""
    processed, pending, orphan = make_sample(minutes=0), make_sample(minutes=3), make_sample(minutes=6)
    for sample in (processed, pending, orphan):
        store.append_raw_sample(sample)
    store.append_raw_sample(make_sample(lat=95.0, minutes=9), validation_status="invalid")
    store.append_processed_location(ProcessedLocation.from_sample(processed, PlaceResolution("A", "road"), "cluster"))
    store.enqueue_pending(ClusterBatchEntry(sample=pending))

    found = store.find_unprocessed_samples(BASE_TIME, BASE_TIME + timedelta(hours=1))
    assert [r.sample for r in found] == [orphan]
    assert store.find_unprocessed_samples(BASE_TIME, BASE_TIME + timedelta(hours=1), worker_id="w2") == []


def test_processed_frame(store):
    for minutes, worker_id in ((0, "w1"), (3, "w1"), (1, "w2")):
        sample = make_sample(worker_id, minutes=minutes)
        store.append_processed_location(ProcessedLocation.from_sample(sample, PlaceResolution("P", "road"), "cluster"))

    df = store.processed_frame(["w1", "w2"])
    assert list(df["worker_id"]) == ["w1", "w2", "w1"]
    assert df["captured_at"].is_monotonic_decreasing
    assert store.processed_frame(["nobody"]).empty


def test_purge_before_drops_old_raw_and_validation_rows(store):
    """Processed locations and the enrichment backlog survive retention cleanup."""
    old, kept = make_sample(minutes=0), make_sample(minutes=60)
    store.append_raw_sample(old)
    store.append_raw_sample(kept)
    store.append_raw_sample(make_sample("w2", minutes=1), "invalid")
    store.append_processed_location(ProcessedLocation.from_sample(old, PlaceResolution("Depot", "office"), "cluster"))
    store.enqueue_pending(ClusterBatchEntry(sample=old))
    store.append_validation_log_entry(ValidationLogEntry(1, "w1", "pass", {}, validated_at=BASE_TIME))
    store.append_validation_log_entry(
        ValidationLogEntry(2, "w1", "pass", {}, validated_at=BASE_TIME + timedelta(minutes=60))
    )

    purged = store.purge_before(BASE_TIME + timedelta(minutes=30))

    assert purged == {"raw_samples": 2, "validation_entries": 1}
    assert [r.sample for r in store.query_raw_samples("w1", include_invalid=True)] == [kept]
    assert store.query_raw_samples("w2", include_invalid=True) == []
    assert len(store.query_validation_log("w1")) == 1
    assert len(store.query_processed_locations("w1")) == 1
    assert store.pending_count() == 1


def test_sample_refs_stay_unique_after_purge(store):
    first = store.append_raw_sample(make_sample(minutes=0))
    store.purge_before(BASE_TIME + timedelta(minutes=1))
    second = store.append_raw_sample(make_sample(minutes=5))
    assert second != first
