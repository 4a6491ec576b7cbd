"""Pydantic request/response schemas for the SnapLabel API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PredictionOut(BaseModel):
    """A single classification label with its score."""

    label: str
    score: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint, highest score first."""

    width: int
    height: int
    predictions: list[PredictionOut]


class HealthResponse(BaseModel):
    """Health check response with two-stage readiness."""

    status: str = "ok"
    gpu: bool
    runtime_ready: bool
    model_ready: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str
    input_size: int
    top_k: int


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
