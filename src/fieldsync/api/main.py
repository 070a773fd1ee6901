"""FastAPI application factory."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from fieldsync.api.routes import sync as sync_routes

logger = logging.getLogger(__name__)


def create_app(service=None, run_background: bool = True) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        service: EngineService to expose. Built on startup when omitted
            (and closed on shutdown).
        run_background: Start the sync worker and the scheduler on startup.
            Tests pass False and drive the orchestrator directly.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from fieldsync.bootstrap import build_engine_service
        from fieldsync.scheduler.jobs import build_scheduler

        owned = service is None
        svc = build_engine_service() if owned else service
        app.state.service = svc

        scheduler = None
        if run_background:
            await svc.orchestrator.initialize()
            scheduler = build_scheduler(svc.orchestrator, svc.remote)
            scheduler.start()
        else:
            svc.queue.load()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            if owned:
                await svc.aclose()
            else:
                await svc.orchestrator.stop()

    app = FastAPI(
        title="Fieldsync API",
        description="Offline-first job and photo sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
