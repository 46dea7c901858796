from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import argparse
import logging
import threading

from build_failure_monitor.api import router as api_router
from build_failure_monitor.errors import GitHubAPIError, GitHubConfigurationError, TransientStoreError
from build_failure_monitor.state import build_app_state
from build_failure_monitor import config


parser = argparse.ArgumentParser(description="Build Failure Monitor entry point.")
parser.add_argument(
    "--no-sync",
    action="store_true",
    help="Do not start the background repository sync loop.",
)
parser.add_argument(
    "--replay",
    action="store_true",
    help="Reprocess the archived webhook deliveries once at startup.",
)
args, _ = parser.parse_known_args()

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def sync_loop(state, stop_event: threading.Event):
    while not stop_event.is_set():
        if state.installations.ensure_installation():
            try:
                state.installations.sync()
            except (GitHubAPIError, GitHubConfigurationError, TransientStoreError) as e:
                logger.error(f"Repository sync loop error: {e}")
        stop_event.wait(config.SYNC_INTERVAL_SECONDS)


def create_app(state=None, start_sync=None, replay=None) -> FastAPI:
    start_sync = (not args.no_sync) if start_sync is None else start_sync
    replay = args.replay if replay is None else replay

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = threading.Event()
        if getattr(app.state, "monitor", None) is None:
            app.state.monitor = build_app_state()
        monitor = app.state.monitor
        logger.info("Build failure monitor initialized")

        if replay:
            monitor.pipeline.replay_archive()
            monitor.metrics.invalidate()

        try:
            if start_sync:
                thread = threading.Thread(target=sync_loop, args=(monitor, stop_event), daemon=True)
                thread.start()
                logger.info("Started background repository sync loop")
            else:
                logger.info("Repository sync loop disabled")
            yield
        finally:
            stop_event.set()
            logger.info("Application shutdown.")

    app = FastAPI(
        title="Build Failure Monitor",
        description="Ingests GitHub CI webhooks, classifies build failures and serves build metrics",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.monitor = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=config.API_PREFIX)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
