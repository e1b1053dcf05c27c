"""Operational control endpoints for the location engine."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..models.errors import ConfigurationError
from ..services.engine import GeoTrackingEngine

router = APIRouter(prefix="/api/control", tags=["control"])


class PollingIntervalRequest(BaseModel):
    interval_ms: int = Field(..., description="Polling interval in milliseconds (30000 - 1800000)")


class ConcurrencyRequest(BaseModel):
    max_concurrent_batches: int = Field(..., description="Ceiling on batches processed at once")


class ClusteringRequest(BaseModel):
    cluster_radius_meters: Optional[float] = None
    sub_batch_size: Optional[int] = None
    pause_seconds: Optional[float] = None
    max_calls_per_run: Optional[int] = Field(None, description="Provider call budget per run; null for unlimited")


class BackfillRequest(BaseModel):
    start: datetime
    end: datetime
    worker_id: Optional[str] = None
    run_now: bool = True


def get_engine(request: Request) -> GeoTrackingEngine:
    engine = request.app.state.engine
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine is not initialised")
    return engine


@router.get("/status")
async def get_status(request: Request):
    """Running flag, in-flight batch count, current tunables and queue statistics."""
    return get_engine(request).status()


@router.get("/polling-interval")
async def get_polling_interval(request: Request):
    return {"interval_ms": get_engine(request).settings.polling_interval_ms}


@router.put("/polling-interval")
async def set_polling_interval(body: PollingIntervalRequest, request: Request):
    try:
        interval_ms = get_engine(request).set_polling_interval(body.interval_ms)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "interval_ms": interval_ms}


@router.get("/concurrency")
async def get_concurrency(request: Request):
    engine = get_engine(request)
    return {
        "max_concurrent_batches": engine.settings.max_concurrent_batches,
        "active_batch_count": engine.pool.active_batch_count,
    }


@router.put("/concurrency")
async def set_concurrency(body: ConcurrencyRequest, request: Request):
    try:
        value = get_engine(request).set_max_concurrent_batches(body.max_concurrent_batches)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "max_concurrent_batches": value}


@router.get("/clustering")
async def get_clustering(request: Request):
    return get_engine(request).clustering_settings()


@router.put("/clustering")
async def set_clustering(body: ClusteringRequest, request: Request):
    """Update any of radius, sub-batch size, pause and call budget. Omitted fields keep their value."""
    try:
        settings = get_engine(request).set_clustering(**body.model_dump(exclude_unset=True))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", **settings}


@router.post("/backfill")
async def trigger_backfill(body: BackfillRequest, request: Request):
    """Re-queue stored samples in [start, end] that never got a processed location."""
    try:
        result = await get_engine(request).backfill(body.start, body.end, body.worker_id, body.run_now)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Backfill failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return JSONResponse(content={"status": "completed", **result})


@router.post("/cycle")
async def trigger_cycle(request: Request):
    batches = await get_engine(request).run_cycle_now()
    return {
        "status": "completed",
        "batches_enqueued": len(batches),
        "batch_ids": [b.batch_id for b in batches],
    }


@router.post("/cluster-run")
async def trigger_cluster_run(request: Request):
    report = await get_engine(request).run_cluster_batch()
    return {"status": "skipped" if report.skipped else "completed", "report": report.to_dict()}


@router.post("/geofences/refresh")
async def refresh_geofences(request: Request):
    """Drop cached geofence zones so the next sample reloads them."""
    refreshed = get_engine(request).refresh_geofences()
    return {"status": "refreshed" if refreshed else "not_cached"}


@router.post("/retention")
async def trigger_retention(request: Request):
    """Run the data-retention cleanup now instead of waiting for the daily job."""
    engine = get_engine(request)
    try:
        purged = engine.purge_expired_data()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "completed", "retention_days": engine.retention_days, "purged": purged}


@router.get("/signals")
async def recent_signals(request: Request, limit: int = 20, kind: Optional[str] = None):
    signals = get_engine(request).signals.recent(limit=limit, kind=kind)
    return {"signals": [s.to_dict() for s in signals]}
