"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, sync
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import CleanupInProgressError, SyncAlreadyRunningError
from core.logging import setup_logging
from order_sync.service import create_sync_service
import logging

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Order Sync Service",
    description="Keeps the order store in sync with the remote order API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

app.include_router(health.router)
app.include_router(sync.router)


@app.exception_handler(SyncAlreadyRunningError)
async def sync_already_running_handler(request: Request, exc: SyncAlreadyRunningError):
    return JSONResponse(
        status_code=409,
        content={
            "success": False,
            "message": exc.message,
            "data": {"running_sync_id": exc.running_sync_id},
            "error": "sync_already_running",
        }
    )


@app.exception_handler(CleanupInProgressError)
async def cleanup_in_progress_handler(request: Request, exc: CleanupInProgressError):
    return JSONResponse(
        status_code=409,
        content={
            "success": False,
            "message": exc.message,
            "data": None,
            "error": "cleanup_in_progress",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Order Sync Service")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    app.state.sync_service = create_sync_service(settings)
    await app.state.sync_service.initialize()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Order Sync Service")
    service = getattr(app.state, "sync_service", None)
    if service is not None:
        await service.shutdown()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Order Sync Service",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "trigger": "/sync/trigger",
            "status": "/sync/status",
            "stats": "/sync/stats",
            "cleanup": "/sync/cleanup"
        }
    }
