"""API routes for the FastAPI application."""

from subsync.api.router import TrailingSlashRouter
from subsync.api.v1.endpoints import billing, health

# Use our custom router that handles trailing slashes
api_router = TrailingSlashRouter()
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
