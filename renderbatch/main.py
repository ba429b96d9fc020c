import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from . import config, metrics
from .auth_middleware import WorkerAuthMiddleware
from .backends import build_default_registry
from .limits import BatchStartLimiter, connect_redis
from .orchestrator import JobOrchestrator
from .repository import BatchRepository, InMemoryBatchRepository, SupabaseBatchRepository
from .routes import batch_router
from .scheduler import PollingScheduler

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _build_repository() -> BatchRepository:
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        logger.info("Batch storage: Supabase")
        return SupabaseBatchRepository()
    logger.info("Batch storage: in-memory (SUPABASE_URL not set)")
    return InMemoryBatchRepository()


def create_app(
    orchestrator: Optional[JobOrchestrator] = None,
    limiter: Optional[BatchStartLimiter] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """
    Build the API. Tests pass their own orchestrator / limiter; the
    lifespan fills in anything missing and runs the polling scheduler.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "orchestrator", None) is None:
            registry = build_default_registry()
            app.state.orchestrator = JobOrchestrator(registry, _build_repository())
            logger.info(f"Render backends: {', '.join(registry.names())}")
        if getattr(app.state, "limiter", None) is None:
            app.state.limiter = BatchStartLimiter(connect_redis(config.REDIS_URL))

        scheduler = PollingScheduler(app.state.orchestrator)
        app.state.scheduler = scheduler
        if run_scheduler:
            scheduler.start()
        yield
        await scheduler.stop()
        await app.state.orchestrator.wait_background()

    app = FastAPI(title="RenderBatch Orchestrator", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.limiter = limiter
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(batch_router)

    @app.get("/health")
    async def health(request: Request):
        orch = request.app.state.orchestrator
        return {
            "status": "ok",
            "environment": config.ENVIRONMENT,
            "backends": orch.registry.names() if orch else [],
            "tracked_batches": len(orch.tracked_batches()) if orch else 0,
        }

    @app.get("/metrics")
    async def get_metrics():
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("renderbatch.main:app", host="0.0.0.0", port=8000)
