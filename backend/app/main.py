"""Image Converter Backend Application.

This is the main entry point for the image converter service. It accepts
uploaded images and returns WebP and/or optimized JPEG versions as base64
payloads.

Modules:
    - images: upload handling, Pillow conversion pipelines, temp-file cleanup
    - errors: error kinds and the boundary handlers mapping them to HTTP
    - config: YAML + environment configuration
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_config
from app.errors import register_error_handlers
from app.images.router import router as images_router
from app.images.storage import UploadStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# PIL logs every plugin import and chunk it parses at DEBUG.
for _noisy in (
    "PIL",
    "multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = UploadStore.get_instance()
    store.ensure_upload_dir()
    logger.info(
        "Upload directory ready: %s (limit %d bytes)",
        store.upload_dir,
        store.max_file_size_bytes,
    )
    logger.info(
        "Server running on http://%s:%s (CORS origin %s)",
        config.server.host,
        config.server.port,
        config.server.cors_origin,
    )

    yield  # Application runs here

    # Shutdown
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application from the current config."""
    config = get_config()

    app = FastAPI(
        title="Image Converter API",
        description="Converts uploaded images to WebP and optimized JPEG",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.server.cors_origin],
        allow_methods=config.server.allowed_methods,
        allow_headers=config.server.allowed_headers,
    )

    register_error_handlers(app)
    app.include_router(images_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
