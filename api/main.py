"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, snowball, jobs
from api.errors import snowball_exception_handler
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import SnowballException
from core.logging import setup_logging
from snowball.engine import SnowballEngine
from snowball.scheduler import SnowballScheduler
from snowball.workers import DistributionWorkerPool
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Snowball Distribution API",
    description="Viral growth of topic email repositories with hop-bounded propagation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(SnowballException, snowball_exception_handler)

# Engine, workers and periodic scheduler
engine = SnowballEngine.from_settings()
worker_pool = DistributionWorkerPool(engine.session_factory, engine.distribution)
scheduler = SnowballScheduler(engine, worker_pool)

app.state.engine = engine
app.state.redis = engine.redis
app.state.worker_pool = worker_pool


# Include routers
app.include_router(health.router)
app.include_router(snowball.router)
app.include_router(jobs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Snowball Distribution API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    # Start workers and scheduler
    worker_pool.start()
    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Snowball Distribution API")
    scheduler.stop()
    await worker_pool.stop()
    if engine.redis is not None:
        await engine.redis.aclose()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Snowball Distribution API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "candidates": "/repositories/{repository_id}/snowball/candidates",
            "pending": "/repositories/{repository_id}/snowball/pending",
            "distribute": "/repositories/{repository_id}/snowball/distribute",
            "stats": "/repositories/{repository_id}/snowball/stats",
            "jobs": "/snowball/jobs/{job_id}"
        }
    }
