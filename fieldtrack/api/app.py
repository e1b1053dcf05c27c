"""FastAPI application exposing engine controls and location reads."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ..services.engine import GeoTrackingEngine, build_engine_from_config
from .control_endpoints import router as control_router
from .location_endpoints import router as locations_router


def create_app(engine: GeoTrackingEngine = None) -> FastAPI:
    """Build the app. Without an engine one is built from configuration at startup."""
    app = FastAPI(
        title="FieldTrack Location Engine",
        description="Batch location polling, geofence validation and cost-bounded place enrichment",
        version="1.0.0",
        openapi_tags=[
            {"name": "control", "description": "Engine status and runtime tunables"},
            {"name": "locations", "description": "Processed locations, raw samples and validation log"},
        ],
    )
    app.state.engine = engine

    app.include_router(control_router)
    app.include_router(locations_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        logger.info("🚀 Starting FieldTrack API...")
        if app.state.engine is None:
            app.state.engine = build_engine_from_config()
        await app.state.engine.start()
        logger.success("✅ FieldTrack API startup complete")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("🛑 Shutting down FieldTrack API...")
        if app.state.engine is not None and app.state.engine.is_running:
            await app.state.engine.stop()
        logger.info("✅ FieldTrack API shutdown complete")

    @app.get("/")
    async def root():
        engine = app.state.engine
        return {"service": "fieldtrack", "engine_running": bool(engine and engine.is_running)}

    return app


app = create_app()
