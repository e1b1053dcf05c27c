"""Tests for the HTTP control and location read endpoints."""
from fastapi.testclient import TestClient

from conftest import (
    OFFICE_LAT,
    FakeEnrichment,
    FakeIngestion,
    FakeRoster,
    RecordingScheduler,
    make_sample,
    make_settings,
)

from fieldtrack.api.app import create_app
from fieldtrack.models.location_models import PlaceResolution, ProcessedLocation
from fieldtrack.services.engine import GeoTrackingEngine
from fieldtrack.services.geofence_service import CachedGeofenceProvider, StaticGeofenceProvider


def build_client(office_zone=None, roster=None):
    engine = GeoTrackingEngine(
        roster=roster or FakeRoster(["w1", "w2"]),
        ingestion=FakeIngestion(),
        geofences=StaticGeofenceProvider([office_zone] if office_zone else []),
        enrichment=FakeEnrichment(),
        settings=make_settings(),
        scheduler=RecordingScheduler(),
    )
    # no context manager: startup events (and the real engine start) are not run
    return TestClient(create_app(engine)), engine


def test_status_reports_engine_state():
    client, _ = build_client()
    response = client.get("/api/control/status")
    assert response.status_code == 200
    data = response.json()
    assert data["is_running"] is False
    assert data["active_batch_count"] == 0
    assert data["current_config"]["polling_interval_ms"] == 180000
    assert data["queue_stats"]["total"] == 0


def test_polling_interval_validation():
    """20000ms is rejected with 400; 180000ms is accepted."""
    client, engine = build_client()

    rejected = client.put("/api/control/polling-interval", json={"interval_ms": 20000})
    assert rejected.status_code == 400
    assert "polling_interval_ms" in rejected.json()["detail"]
    assert engine.settings.polling_interval_ms == 180000

    accepted = client.put("/api/control/polling-interval", json={"interval_ms": 180000})
    assert accepted.status_code == 200
    assert client.get("/api/control/polling-interval").json() == {"interval_ms": 180000}


def test_concurrency_update():
    client, engine = build_client()
    assert client.put("/api/control/concurrency", json={"max_concurrent_batches": 0}).status_code == 400
    response = client.put("/api/control/concurrency", json={"max_concurrent_batches": 10})
    assert response.status_code == 200
    assert engine.settings.max_concurrent_batches == 10
    assert client.get("/api/control/concurrency").json()["max_concurrent_batches"] == 10


def test_clustering_partial_update():
    client, engine = build_client()
    response = client.put("/api/control/clustering", json={"cluster_radius_meters": 250})
    assert response.status_code == 200
    assert response.json()["cluster_radius_meters"] == 250
    assert engine.settings.sub_batch_size == 50

    bad = client.put("/api/control/clustering", json={"cluster_radius_meters": 50, "pause_seconds": 600})
    assert bad.status_code == 400
    assert engine.settings.cluster_radius_meters == 250


def test_manual_cycle_and_cluster_run():
    client, engine = build_client()

    cycle = client.post("/api/control/cycle")
    assert cycle.status_code == 200
    assert cycle.json()["batches_enqueued"] == 1

    run = client.post("/api/control/cluster-run")
    assert run.status_code == 200
    assert run.json()["status"] == "completed"


def test_backfill_requeues_orphaned_samples():
    client, engine = build_client()
    sample = make_sample(lat=OFFICE_LAT + 0.01)
    engine.store.append_raw_sample(sample)

    response = client.post("/api/control/backfill", json={
        "start": "2024-03-04T00:00:00Z",
        "end": "2024-03-05T00:00:00Z",
        "worker_id": "w1",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["samples_queued"] == 1
    assert body["cluster_run"]["enriched"] == 1
    assert [loc.source for loc in engine.store.query_processed_locations("w1")] == ["cluster"]


def test_backfill_rejects_reversed_window():
    client, _ = build_client()
    response = client.post("/api/control/backfill", json={
        "start": "2024-03-05T00:00:00Z",
        "end": "2024-03-04T00:00:00Z",
    })
    assert response.status_code == 400


def test_location_reads():
    client, engine = build_client()
    sample = make_sample()
    engine.store.append_raw_sample(sample)
    engine.store.append_processed_location(
        ProcessedLocation.from_sample(sample, PlaceResolution("Head Office", "office"), "geofence")
    )

    processed = client.get("/api/locations/w1/processed", params={
        "start": "2024-03-04T08:00:00Z",
        "end": "2024-03-04T10:00:00Z",
    })
    assert processed.status_code == 200
    assert processed.json()["locations"][0]["resolved_place_name"] == "Head Office"

    outside = client.get("/api/locations/w1/processed", params={"start": "2024-03-05T00:00:00Z"})
    assert outside.json()["count"] == 0

    assert client.get("/api/locations/w1/raw").json()["count"] == 1
    assert client.get("/api/locations/w1/validation").json()["count"] == 0
    assert client.get("/api/locations/w1/raw", params={
        "start": "2024-03-05T00:00:00Z", "end": "2024-03-04T00:00:00Z",
    }).status_code == 400


def test_recent_signals():
    client, _ = build_client()
    client.post("/api/control/cycle")
    kinds = [s["kind"] for s in client.get("/api/control/signals").json()["signals"]]
    assert "cycle_started" in kinds and "cycle_completed" in kinds


def test_map_view_combines_workers_for_one_day():
    client, engine = build_client()
    for worker_id, lat, minutes, place in (
        ("w1", OFFICE_LAT + 0.01, 0, PlaceResolution("Mall Road", "road")),
        ("w2", OFFICE_LAT + 0.02, 30, PlaceResolution("Head Office", "office")),
        ("w1", OFFICE_LAT + 0.03, 60 * 24, PlaceResolution("Next Day Stop", "road")),
    ):
        sample = make_sample(worker_id, lat=lat, minutes=minutes)
        engine.store.append_processed_location(ProcessedLocation.from_sample(sample, place, "cluster"))

    response = client.get("/api/locations/map", params={"date": "2024-03-04", "worker_id": ["w1", "w2"]})

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [loc["worker_id"] for loc in body["locations"]] == ["w2", "w1"]
    assert body["locations"][0]["location_name"] == "Head Office"
    assert body["place_types"] == {"office": 1, "road": 1}
    assert body["workers_seen"] == 2

    assert client.get("/api/locations/map", params={"date": "2024-03-04"}).status_code == 422


def test_geofence_refresh_reloads_cached_zones(office_zone):
    client, engine = build_client()
    upstream = StaticGeofenceProvider([office_zone])
    engine.geofences = CachedGeofenceProvider(upstream, ttl_seconds=3600)
    assert engine.geofences.list_zones() == [office_zone]
    upstream.zones = []

    response = client.post("/api/control/geofences/refresh")

    assert response.json() == {"status": "refreshed"}
    assert engine.geofences.list_zones() == []


def test_geofence_refresh_without_cache():
    client, _ = build_client()
    assert client.post("/api/control/geofences/refresh").json() == {"status": "not_cached"}


def test_manual_retention_run():
    client, engine = build_client()
    engine.store.append_raw_sample(make_sample())

    response = client.post("/api/control/retention")

    assert response.status_code == 200
    body = response.json()
    assert body["retention_days"] == engine.retention_days
    assert body["purged"]["raw_samples"] == 1
    assert client.get("/api/locations/w1/raw").json()["count"] == 0
