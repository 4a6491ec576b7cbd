"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from snaplabel.api.middleware import verify_api_key
from snaplabel.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionOut,
)
from snaplabel.errors import DecodeError, InferenceError, MalformedGridError
from snaplabel.ml.model_manager import MODEL_REGISTRY
from snaplabel.ml.tensor import to_tensor

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.ml.decoder import ImageDecoder
    from snaplabel.ml.engine import InferenceEngine
    from snaplabel.ml.inference import InferencePool
    from snaplabel.ml.model_manager import ModelManager
    from snaplabel.ml.tensor import Tensor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_engine(request: Request) -> InferenceEngine:
    engine: InferenceEngine = request.app.state.engine
    return engine


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a JPEG image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Decode an uploaded JPEG and return the model's ranked labels."""
    settings = _get_settings(request)
    engine = _get_engine(request)
    decoder: ImageDecoder = request.app.state.decoder

    if not engine.model_ready:
        # Kicks off a fresh load if the previous one failed.
        engine.schedule_load()
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, f"Model is not ready (state: {engine.state})")

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"Upload exceeds the limit of {settings.max_file_size} bytes",
        )

    try:
        tensor: Tensor = await asyncio.to_thread(lambda: to_tensor(decoder.decode(data)))
    except DecodeError as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))
    except MalformedGridError:
        logger.exception("Pixel grid invariant violated for upload %s", file.filename)
        raise

    try:
        predictions = await engine.classify(tensor)
    except InferenceError as exc:
        if isinstance(exc.__cause__, TimeoutError):
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, try again")
        logger.exception("Classification of upload %s failed", file.filename)
        raise

    return ClassifyImageResponse(
        width=tensor.width,
        height=tensor.height,
        predictions=[PredictionOut(label=p.label, score=p.score) for p in predictions],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and readiness."""
    settings = _get_settings(request)
    engine = _get_engine(request)
    pool = _get_inference_pool(request)
    model_manager: ModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        runtime_ready=engine.runtime_ready,
        model_ready=engine.model_ready,
        models_loaded=model_manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered classification models, marking the configured one active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            status="active" if spec.name == settings.classification_model else "available",
            license=spec.license,
            input_size=spec.input_size,
            top_k=spec.top_k,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
