"""Entry point: ``python -m fieldtrack.main --api --port 8000`` or a headless engine run."""
import argparse
import asyncio
import signal

from loguru import logger

from .configurations.config import Config
from .configurations.logging_config import configure_logging


async def run_headless():
    from .services.engine import build_engine_from_config

    engine = build_engine_from_config()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await engine.start()
    try:
        await stop_event.wait()
    finally:
        await engine.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="FieldTrack location polling and geofence engine")
    parser.add_argument("--api", action="store_true", help="Serve the HTTP control API (engine runs inside it)")
    parser.add_argument("--host", default=Config.API_HOST)
    parser.add_argument("--port", type=int, default=Config.PORT)
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    if args.api:
        import uvicorn

        from .api.app import app

        logger.info(f"🌐 Serving API on {args.host}:{args.port}")
        uvicorn.run(app, host=args.host, port=args.port)
    else:
        asyncio.run(run_headless())


if __name__ == "__main__":
    main()
