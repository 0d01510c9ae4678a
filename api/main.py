"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs, errors
from api.dependencies import close_ledger_database
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Bridge Migration Ops API",
    description="Job run history and error ledger of the bridge migration pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(jobs.router)
app.include_router(errors.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Bridge Migration Ops API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    url = settings.LEDGER_DATABASE_URL
    logger.info(f"Ledger database: {url.split('@')[1] if '@' in url else 'configured'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Bridge Migration Ops API")
    await close_ledger_database()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Bridge Migration Ops API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "job_runs": "/jobs/runs",
            "errors": "/errors"
        }
    }
