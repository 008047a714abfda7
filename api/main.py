"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, runs, mappings
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import dispose_engine
from core.logging import setup_logging
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Questionnaire Migration Status API",
    description="Read-only status of questionnaire migration runs and identity mappings",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Adds X-Request-ID and X-API-Latency-ms headers
app.add_middleware(RequestContextMiddleware)


# Include routers
app.include_router(health.router)
app.include_router(runs.router)
app.include_router(mappings.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Questionnaire Migration Status API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Questionnaire Migration Status API")
    await dispose_engine()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Questionnaire Migration Status API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "runs": "/runs",
            "mappings": "/mappings/stats"
        }
    }
