"""
packhost - multi-tenant pack host

FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from packhost import __version__
from packhost.app.api import admin_router, ingress_router
from packhost.app.dependencies import get_settings, initialize_services, shutdown_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the host, loads every tenant once and starts the watcher.
    """
    logger.info("Starting packhost services...")
    try:
        await initialize_services()
        logger.info("packhost services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down packhost services...")
    try:
        await shutdown_services()
        logger.info("packhost services shut down successfully")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)


settings = get_settings()

app = FastAPI(
    title="packhost",
    description="Multi-tenant pack host with session-keyed flow pause/resume",
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)

app.include_router(ingress_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": "packhost",
        "version": __version__,
        "status": "running",
    }


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, Any]:
    """
    Health check endpoint.

    Healthy once the host is built; lists the tenants currently live.
    """
    from packhost.app.dependencies import get_host

    try:
        host = get_host()
    except RuntimeError as e:
        return {"status": "unhealthy", "error": str(e)}

    return {
        "status": "healthy",
        "tenants": host.registry.tenants(),
        "watching": host.reconciler.running,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "packhost.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
