"""
FastAPI entrypoint for the Narrated Video Factory API.

* POST /jobs starts a job that runs on a background worker
* GET /jobs/{job_id} reports status and progress
* Jobs can also be run synchronously via app/pipelines/run_full_pipeline.py (CLI)
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes_jobs import router as jobs_router
from app.core.config import settings
from app.core.logging_config import get_logger, setup_logging
from app.services.job_orchestrator import JobOrchestrator
from app.storage.repository import InMemoryJobStore

# Setup logging
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


async def sweep_jobs(orchestrator: JobOrchestrator, interval: float) -> None:
    """Evict expired job records every interval seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            orchestrator.sweep()
        except Exception as e:
            logger.error(f"Job sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Parallel jobs: {settings.max_parallel_jobs}")
    logger.info("=" * 60)
    store = InMemoryJobStore(logger, max_jobs=settings.max_jobs_to_keep, ttl_seconds=settings.job_ttl_seconds)
    orchestrator = JobOrchestrator(settings, store, logger)
    app.state.orchestrator = orchestrator
    sweeper = asyncio.create_task(sweep_jobs(orchestrator, settings.job_sweep_interval_seconds))
    yield
    # Shutdown
    logger.info("Shutting down application")
    sweeper.cancel()
    orchestrator.shutdown(wait=False)


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Narrated Video Factory - topic in, lip-synced narrated video out",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "endpoints": {
            "create_job": "/jobs",
            "get_job": "/jobs/{job_id}",
            "list_jobs": "/jobs",
            "docs": "/docs",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
