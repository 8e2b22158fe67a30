"""FastAPI application for the library sync service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from library_sync.config import get_settings
from library_sync.database import check_db_ready
from library_sync.errors import CheckpointNotFoundError, SyncAlreadyRunningError
from library_sync.routers import health_router, sync_router
from library_sync.services.sync_control import get_controller
from library_sync.tasks.scheduler import setup_scheduler, shutdown_scheduler
from library_sync.websocket import broadcaster, websocket_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting library sync service...")

    # Verify database is ready
    try:
        await check_db_ready()
        logger.info("Database ready")
    except Exception as e:
        logger.error(f"Database not ready: {e}")
        raise

    broadcaster.start()
    setup_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    await get_controller().shutdown()
    await broadcaster.stop()
    logger.info("Library sync service shut down")


# Create FastAPI app
app = FastAPI(
    title="Library Sync API",
    description="Incremental, rate-limit aware sync of a music library catalog",
    version="0.1.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SyncAlreadyRunningError)
async def sync_already_running_handler(request: Request, exc: SyncAlreadyRunningError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "run_id": exc.run_id, "status": exc.status},
    )


@app.exception_handler(CheckpointNotFoundError)
async def checkpoint_not_found_handler(request: Request, exc: CheckpointNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(sync_router, prefix=settings.api_v1_prefix)
app.include_router(websocket_router)  # WebSocket at /ws/sync


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Library Sync API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "library_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
