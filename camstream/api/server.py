"""FastAPI application factory for the capture service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from camstream.api.routes import camera, health
from camstream.config import get_settings
from camstream.service import get_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Camera service starting...")

    settings = get_settings()
    service = get_service()
    cameras = service.registry.cameras
    logger.info(f"Loaded {len(cameras)} cameras: {', '.join(camera.id for camera in cameras)}")
    logger.info(f"Camera service ready on {settings.server.host}:{settings.server.port}")

    yield

    logger.info("Camera service shutting down...")
    await service.shutdown()
    logger.info("Camera service stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Camstream",
        description="Camera capture, recording and live streaming service.",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS middleware for browser clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(camera.router, prefix="/api/camera", tags=["Camera"])

    return app


# Create default app instance for uvicorn
app = create_app()
