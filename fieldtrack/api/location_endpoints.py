"""Read endpoints for processed locations, the day map view, raw samples and the validation log."""
from datetime import date, datetime, time, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ..models.location_models import as_utc
from .control_endpoints import get_engine

router = APIRouter(prefix="/api/locations", tags=["locations"])


def _check_window(start: Optional[datetime], end: Optional[datetime]):
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        raise HTTPException(status_code=400, detail="start must not be after end")


@router.get("/map")
async def get_locations_for_map(
    request: Request,
    day: date = Query(..., alias="date", description="Calendar day (UTC), e.g. 2024-03-04"),
    worker_id: List[str] = Query(..., description="Workers to include; repeat the parameter for several"),
):
    """Processed locations of several workers on one day, newest first, for map display."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time.max, tzinfo=timezone.utc)
    df = get_engine(request).store.processed_frame(worker_id, start, end)

    locations = []
    for _, row in df.iterrows():
        locations.append({
            "worker_id": row["worker_id"],
            "latitude": float(row["latitude"]),
            "longitude": float(row["longitude"]),
            "location_name": row["resolved_place_name"],
            "location_type": row["place_type"],
            "timestamp": row["captured_at"].isoformat(),
        })

    place_types = {k: int(v) for k, v in df["place_type"].value_counts().to_dict().items()} if not df.empty else {}
    return {
        "date": day.isoformat(),
        "count": len(locations),
        "workers_seen": int(df["worker_id"].nunique()) if not df.empty else 0,
        "place_types": place_types,
        "locations": locations,
    }


@router.get("/{worker_id}/processed")
async def get_processed_locations(
    worker_id: str,
    request: Request,
    start: Optional[datetime] = Query(None, description="Inclusive window start (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Inclusive window end (ISO 8601)"),
):
    _check_window(start, end)
    locations = get_engine(request).store.query_processed_locations(worker_id, start, end)
    return {"worker_id": worker_id, "count": len(locations), "locations": [loc.to_dict() for loc in locations]}


@router.get("/{worker_id}/raw")
async def get_raw_samples(
    worker_id: str,
    request: Request,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_invalid: bool = False,
):
    _check_window(start, end)
    records = get_engine(request).store.query_raw_samples(worker_id, start, end, include_invalid)
    return {"worker_id": worker_id, "count": len(records), "samples": [r.to_dict() for r in records]}


@router.get("/{worker_id}/validation")
async def get_validation_log(
    worker_id: str,
    request: Request,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    _check_window(start, end)
    entries = get_engine(request).store.query_validation_log(worker_id, start, end)
    return {"worker_id": worker_id, "count": len(entries), "entries": [e.to_dict() for e in entries]}
