"""API routers."""

from library_sync.routers.health import router as health_router
from library_sync.routers.sync import router as sync_router

__all__ = ["health_router", "sync_router"]
