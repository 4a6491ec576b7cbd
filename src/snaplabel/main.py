"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snaplabel.api.routes import router
from snaplabel.config import get_settings
from snaplabel.ml.decoder import ImageDecoder
from snaplabel.ml.engine import InferenceEngine
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the runtime, load the model in the background, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapLabel (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    engine = InferenceEngine(settings, model_manager, inference_pool)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.engine = engine
    app.state.decoder = ImageDecoder(max_image_pixels=settings.max_image_pixels)

    # Runtime failure is fatal: let it abort startup.
    await engine.init_runtime()
    # A failed load is retried by the next /classify-image request.
    engine.schedule_load()

    logger.info("SnapLabel accepting requests")
    yield

    logger.info("Shutting down SnapLabel")
    await engine.aclose()
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("SnapLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapLabel",
        description="Photo classification: JPEG in, ranked labels out",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("snaplabel.main:app", host=settings.host, port=settings.port)
